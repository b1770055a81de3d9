"""
Across-subject summaries and condition statistics for fixation time courses.
"""
import logging

import pandas as pd
import numpy as np
from typing import List, Optional, Sequence, Tuple
import statsmodels.formula.api as smf
from scipy import stats

from vwp_etl.preprocess import require_columns

logger = logging.getLogger(__name__)


def summarize_timecourse(agg: pd.DataFrame,
                         by: Sequence[str] = ("Condition", "Object", "Time"),
                         value: str = "meanFix",
                         subject_col: str = "Subject") -> pd.DataFrame:
    """
    Grand-average a per-subject time course (mean and SEM across subjects).

    Missing per-subject values are left out of the mean rather than
    counted as zero; ``n_subjects`` reports how many contributed.
    """
    by = list(by)
    require_columns(agg, by + [value, subject_col], "summarize_timecourse")
    grouped = agg.groupby(by)[value]
    result = pd.DataFrame({
        f"{value}_mean": grouped.mean(),
        f"{value}_sem": grouped.sem(),
        "n_subjects": agg.dropna(subset=[value]).groupby(by)[subject_col].nunique(),
    })
    result["n_subjects"] = result["n_subjects"].fillna(0).astype(int)
    return result.reset_index()


def _cohens_dz(x: np.ndarray, y: np.ndarray) -> float:
    """Cohen's d_z for paired samples."""
    diff = np.asarray(x) - np.asarray(y)
    sd = np.std(diff, ddof=1)
    if sd == 0 or np.isnan(sd):
        return np.nan
    return np.mean(diff) / sd


def _eta_squared(groups: List[np.ndarray]) -> float:
    """Calculate eta-squared for one-way ANOVA."""
    all_vals = np.concatenate(groups)
    grand_mean = np.mean(all_vals)
    ss_between = sum(len(g) * (np.mean(g) - grand_mean) ** 2 for g in groups)
    ss_total = np.sum((all_vals - grand_mean) ** 2)
    if ss_total == 0:
        return np.nan
    return ss_between / ss_total


def _bootstrap_ci(func, data: List[np.ndarray], n_boot: int = 1000, ci: float = 0.95,
                  paired: bool = False, seed: Optional[int] = None) -> Tuple[float, float]:
    """Bootstrap confidence interval for the given statistic.

    With ``paired`` the same subject indices are resampled in every array.
    """
    rng = np.random.default_rng(seed)
    stats_bs = []
    for _ in range(n_boot):
        if paired:
            idx = rng.integers(0, len(data[0]), size=len(data[0]))
            samples = [d[idx] for d in data]
        else:
            samples = [rng.choice(d, size=len(d), replace=True) for d in data]
        stats_bs.append(func(*samples))
    lower = np.nanpercentile(stats_bs, (1 - ci) / 2 * 100)
    upper = np.nanpercentile(stats_bs, (1 + ci) / 2 * 100)
    return lower, upper


def compare_conditions(window_df: pd.DataFrame, metric: str = "meanFix",
                       condition_col: str = "Condition",
                       subject_col: str = "Subject",
                       ci: bool = False,
                       seed: Optional[int] = None) -> pd.DataFrame:
    """Compare conditions on a per-subject window measure.

    Conditions are within-subject, so two conditions are compared with a
    paired t-test over subjects who have both, and more conditions with a
    one-way ANOVA over subject means.

    Parameters
    ----------
    window_df : pd.DataFrame
        Output of ``window_proportions`` for a single object category.
    metric : str, optional
        Column to compare, by default ``meanFix``.
    ci : bool, optional
        If True, bootstrap a 95% confidence interval for the effect size.
    """
    require_columns(window_df, [metric, condition_col, subject_col], "compare_conditions")
    wide = window_df.pivot_table(index=subject_col, columns=condition_col,
                                 values=metric, aggfunc="mean")
    conditions = list(wide.columns)
    if len(conditions) < 2:
        raise ValueError(f"Need at least two conditions to compare, got {conditions}")

    ci_low = ci_high = np.nan
    if len(conditions) == 2:
        paired = wide.dropna()
        if len(paired) < len(wide):
            logger.warning("Dropping %d subjects missing a condition", len(wide) - len(paired))
        x = paired[conditions[0]].to_numpy()
        y = paired[conditions[1]].to_numpy()
        stat, p = stats.ttest_rel(x, y)
        effect = _cohens_dz(x, y)
        test = "paired t-test"
        n = len(paired)
        if ci:
            ci_low, ci_high = _bootstrap_ci(_cohens_dz, [x, y], paired=True, seed=seed)
    else:
        data = [wide[c].dropna().to_numpy() for c in conditions]
        stat, p = stats.f_oneway(*data)
        effect = _eta_squared(data)
        test = "ANOVA"
        n = int(wide.notna().any(axis=1).sum())
        if ci:
            ci_low, ci_high = _bootstrap_ci(lambda *d: _eta_squared(list(d)), data, seed=seed)

    return pd.DataFrame({
        "test": [test],
        "statistic": [stat],
        "p_value": [p],
        "effect_size": [effect],
        "ci_lower": [ci_low],
        "ci_upper": [ci_high],
        "n_subjects": [n],
        "conditions": [str(conditions)],
    })


def mixed_effects_model(window_df: pd.DataFrame, formula: str = "meanFix ~ Condition",
                        group_var: str = "Subject") -> pd.DataFrame:
    """Fit a linear mixed model with a random intercept per ``group_var``.

    Returns
    -------
    pd.DataFrame
        One row per fixed/random effect term with estimate, standard error,
        z statistic and p value.
    """
    data = window_df.dropna()
    model = smf.mixedlm(formula, data, groups=data[group_var])
    fit = model.fit()
    return pd.DataFrame({
        "term": fit.params.index,
        "estimate": fit.params.values,
        "std_err": fit.bse.reindex(fit.params.index).values,
        "z": fit.tvalues.reindex(fit.params.index).values,
        "p_value": fit.pvalues.reindex(fit.params.index).values,
    })
