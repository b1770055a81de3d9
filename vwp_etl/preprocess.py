"""
AOI labelling, time binning and long-format reshaping of gaze samples.
"""
import pandas as pd
import numpy as np
from typing import Dict, List, Optional, Sequence, Tuple
import logging

logger = logging.getLogger(__name__)

OBJECT_CATEGORIES = ('Target', 'Competitor', 'Unrelated')
TRIAL_COL = 'Trial'


class MissingColumnError(ValueError):
    """A pipeline stage was given a table without a column it needs."""

    def __init__(self, missing: List[str], stage: str = ''):
        self.missing = list(missing)
        self.stage = stage
        where = f" for {stage}" if stage else ""
        super().__init__(f"Missing required columns{where}: {self.missing}")


class MalformedCodeError(ValueError):
    """A location code could not be parsed into a region number."""


def require_columns(df: pd.DataFrame, columns: Sequence[str], stage: str = '') -> None:
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise MissingColumnError(missing, stage)


def _is_fixation_column(series: pd.Series) -> bool:
    # bool columns, or object columns that only hold bools and missing values
    if pd.api.types.is_bool_dtype(series):
        return True
    if series.dtype != object:
        return False
    present = series.dropna()
    return all(isinstance(v, (bool, np.bool_)) for v in present)


def _parse_location(series: pd.Series) -> pd.Series:
    # Accepts 3, "3" and "loc3"; anything else is NaN
    numeric = pd.to_numeric(series, errors='coerce')
    as_text = series.astype(str).str.extract(r'(\d+)\s*$', expand=False)
    return numeric.fillna(pd.to_numeric(as_text, errors='coerce'))


def label_aoi(df: pd.DataFrame, aoi_col: str = 'AOI',
              target_loc_col: str = 'TargetLoc',
              comp_loc_col: str = 'CompPort') -> pd.DataFrame:
    """
    Mark which object each gaze sample falls on.

    Parameters:
    -----------
    df : pd.DataFrame
        Gaze samples with a resolved AOI code and the screen locations of the
        target and competitor pictures for the trial
    aoi_col : str, optional
        Column holding the AOI code (0 or missing = no region), by default 'AOI'
    target_loc_col : str, optional
        Column holding the target's location code, by default 'TargetLoc'
    comp_loc_col : str, optional
        Column holding the competitor's location code, by default 'CompPort'

    Returns:
    --------
    pd.DataFrame
        Copy of the samples with boolean ``Target``, ``Competitor`` and
        ``Unrelated`` columns. At most one of them is True per sample.

    Raises:
    -------
    MalformedCodeError
        If a target or competitor location cannot be parsed, since the
        regions for that trial cannot be identified.
    """
    require_columns(df, [aoi_col, target_loc_col, comp_loc_col], 'label_aoi')
    clash = [c for c in OBJECT_CATEGORIES if c in df.columns]
    if clash:
        raise ValueError(f"label_aoi would overwrite existing columns: {clash}")
    out = df.copy()

    aoi = pd.to_numeric(out[aoi_col], errors='coerce')
    n_bad = int((aoi.isna() & out[aoi_col].notna()).sum())
    if n_bad:
        logger.warning("%d samples have an unparseable AOI code; treated as no region", n_bad)
    fractional = aoi.notna() & (aoi != aoi.round())
    if fractional.any():
        logger.warning("%d samples have a non-integer AOI code; treated as no region", int(fractional.sum()))
        aoi = aoi.mask(fractional)
    aoi = aoi.fillna(0)

    locations = {}
    for col in (target_loc_col, comp_loc_col):
        loc = _parse_location(out[col])
        if loc.isna().any():
            bad = out.loc[loc.isna(), col].unique().tolist()
            raise MalformedCodeError(f"Cannot parse location codes in '{col}': {bad[:5]}")
        locations[col] = loc

    in_region = aoi != 0
    out[aoi_col] = aoi.astype(int)
    out['Target'] = in_region & (aoi == locations[target_loc_col])
    out['Competitor'] = in_region & (aoi == locations[comp_loc_col]) & ~out['Target']
    out['Unrelated'] = in_region & ~out['Target'] & ~out['Competitor']
    return out


def binify_fixations(df: pd.DataFrame, keep: Sequence[str], bin_width: float = 20,
                     subject_col: str = 'Subject', trial_col: str = TRIAL_COL,
                     time_col: str = 'Time',
                     fixation_cols: Optional[Sequence[str]] = None) -> pd.DataFrame:
    """
    Collapse gaze samples into fixed-width time bins per trial.

    Parameters:
    -----------
    df : pd.DataFrame
        Labelled gaze samples
    keep : Sequence[str]
        Columns to carry into the binned table
    bin_width : float, optional
        Bin width in ms, by default 20
    subject_col, trial_col, time_col : str, optional
        Identifier and timestamp columns, by default 'Subject', 'Trial', 'Time'
    fixation_cols : Optional[Sequence[str]], optional
        Keep columns reduced with logical OR. Defaults to the keep columns
        holding only booleans and missing values. All other keep columns
        take their first non-missing value within the bin.

    Returns:
    --------
    pd.DataFrame
        One row per subject/trial/bin with ``timeBin`` (bin index) and
        the time column replaced by the bin start in ms
    """
    if not bin_width > 0:
        raise ValueError(f"bin_width must be positive, got {bin_width}")
    keys = [subject_col, trial_col]
    keep = [c for c in keep if c not in keys and c != time_col]
    require_columns(df, keys + [time_col] + keep, 'binify_fixations')

    if fixation_cols is None:
        fixation_cols = [c for c in keep if _is_fixation_column(df[c])]
    else:
        require_columns(df, fixation_cols, 'binify_fixations')
        fixation_cols = [c for c in fixation_cols if c in keep]
    logger.debug('binify_fixations input shape: %s', df.shape)

    time = pd.to_numeric(df[time_col], errors='coerce')
    work = df[keys + keep].copy()
    n_untimed = int(time.isna().sum())
    if n_untimed:
        logger.warning("Dropping %d samples without a timestamp", n_untimed)
        work = work[time.notna()]
        time = time[time.notna()]

    for col in fixation_cols:
        work[col] = work[col].where(work[col].notna(), False).astype(bool)
    work['timeBin'] = np.floor(time / bin_width).astype(np.int64)

    agg: Dict[str, str] = {c: ('any' if c in fixation_cols else 'first') for c in keep}
    if agg:
        binned = work.groupby(keys + ['timeBin'], sort=True, dropna=False).agg(agg).reset_index()
    else:
        binned = work[keys + ['timeBin']].drop_duplicates().sort_values(keys + ['timeBin'])
        binned = binned.reset_index(drop=True)
    binned[time_col] = binned['timeBin'] * bin_width

    logger.debug('binify_fixations output shape: %s', binned.shape)
    return binned[keys + ['timeBin', time_col] + keep]


def reshape_long(df: pd.DataFrame, category_cols: Sequence[str] = OBJECT_CATEGORIES,
                 key_col: str = 'Object', value_col: str = 'Fix') -> pd.DataFrame:
    """
    Stack per-object fixation columns into one row per bin and object.

    The result has ``len(df) * len(category_cols)`` rows; missing fixation
    values become False.
    """
    category_cols = list(category_cols)
    require_columns(df, category_cols, 'reshape_long')
    id_cols = [c for c in df.columns if c not in category_cols]

    long_df = df.melt(id_vars=id_cols, value_vars=category_cols,
                      var_name=key_col, value_name=value_col)
    long_df[value_col] = long_df[value_col].fillna(False).astype(bool)
    return long_df


def preprocess_pipeline(df: pd.DataFrame,
                        keep: Sequence[str] = ('Condition', 'ACC', 'RT'),
                        bin_width: float = 20,
                        label: bool = True,
                        subject_col: str = 'Subject',
                        trial_col: Optional[str] = None,
                        time_col: str = 'Time',
                        aoi_col: str = 'AOI',
                        target_loc_col: str = 'TargetLoc',
                        comp_loc_col: str = 'CompPort',
                        category_cols: Sequence[str] = OBJECT_CATEGORIES) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Label, bin and reshape raw gaze samples.

    Parameters:
    -----------
    df : pd.DataFrame
        Raw gaze samples
    keep : Sequence[str], optional
        Trial metadata columns to carry through, by default Condition, ACC, RT.
        The object category columns are always kept.
    bin_width : float, optional
        Bin width in ms, by default 20
    label : bool, optional
        Derive the object category columns from the AOI code. Set to False
        when the input already carries them, by default True
    trial_col : Optional[str], optional
        Column identifying the trial in the report. It is renamed to Trial so
        it cannot collide with the object columns. Defaults to 'Target' when
        labelling and to 'Trial' otherwise, since 'Target' is then an object
        column.

    Returns:
    --------
    Tuple[pd.DataFrame, pd.DataFrame]
        Tuple of (binned, long)
    """
    logger.debug('preprocess_pipeline input shape: %s', df.shape)
    if trial_col is None:
        trial_col = 'Target' if label else TRIAL_COL
    elif not label and trial_col in category_cols:
        raise ValueError(f"'{trial_col}' is an object column in pre-labelled input; "
                         f"name a separate trial column with trial_col")
    if trial_col != TRIAL_COL:
        require_columns(df, [trial_col], 'preprocess_pipeline')
        if TRIAL_COL in df.columns:
            logger.info("Renaming existing '%s' column to 'TrialIndex'", TRIAL_COL)
            df = df.rename(columns={TRIAL_COL: 'TrialIndex'})
            keep = ['TrialIndex' if c == TRIAL_COL else c for c in keep]
        df = df.rename(columns={trial_col: TRIAL_COL})
        keep = [TRIAL_COL if c == trial_col else c for c in keep]
    if label:
        df = label_aoi(df, aoi_col, target_loc_col, comp_loc_col)
        logger.debug('After label_aoi shape: %s', df.shape)

    keep = list(keep) + [c for c in category_cols if c not in keep]
    binned = binify_fixations(df, keep, bin_width, subject_col, TRIAL_COL, time_col,
                              fixation_cols=list(category_cols))
    logger.debug('After binify_fixations shape: %s', binned.shape)

    long_df = reshape_long(binned, category_cols)
    logger.debug('After reshape_long shape: %s', long_df.shape)
    return binned, long_df
