import math

import pytest

pd = pytest.importorskip("pandas")
from vwp_analysis.metrics import (
    apply_category_divisors,
    filter_trials,
    fixation_timecourse,
    gaze_diagnostics,
    subject_diagnostics,
    window_proportions,
)
from vwp_etl.preprocess import MissingColumnError


def _long(rows, condition='A'):
    """rows: (subject, trial, acc, object, time, fix)"""
    df = pd.DataFrame(rows, columns=['Subject', 'Trial', 'ACC', 'Object', 'Time', 'Fix'])
    df['Condition'] = condition
    return df


def _cell(tc, subject, obj, time):
    row = tc[(tc['Subject'] == subject) & (tc['Object'] == obj) & (tc['Time'] == time)]
    assert len(row) == 1
    return row.iloc[0]


@pytest.fixture
def two_subjects():
    rows = []
    # S1: three accurate trials; t3 has no Competitor rows
    for trial, t0, t20 in [('t1', True, True), ('t2', False, True), ('t3', True, True)]:
        rows += [('S1', trial, 1, 'Target', 0, t0), ('S1', trial, 1, 'Target', 20, t20)]
    for trial, t0, t20 in [('t1', False, False), ('t2', True, False)]:
        rows += [('S1', trial, 1, 'Competitor', 0, t0), ('S1', trial, 1, 'Competitor', 20, t20)]
    for trial, t0, t20 in [('t1', False, False), ('t2', False, True), ('t3', False, False)]:
        rows += [('S1', trial, 1, 'Unrelated', 0, t0), ('S1', trial, 1, 'Unrelated', 20, t20)]
    # S2: u3 answered incorrectly, u2 has a missing fixation value
    for trial, acc, t0, t20 in [('u1', 1, True, True), ('u2', 1, None, True), ('u3', 0, True, True)]:
        rows += [('S2', trial, acc, 'Target', 0, t0), ('S2', trial, acc, 'Target', 20, t20)]
    return _long(rows)


def test_timecourse_hand_computed(two_subjects):
    tc = fixation_timecourse(two_subjects)
    assert list(tc.columns) == ['Subject', 'Condition', 'Object', 'Time', 'sumFix', 'nTrials', 'meanFix']

    cell = _cell(tc, 'S1', 'Target', 0)
    assert (cell['sumFix'], cell['nTrials']) == (2, 3)
    assert cell['meanFix'] == pytest.approx(2 / 3)
    assert _cell(tc, 'S1', 'Target', 20)['meanFix'] == pytest.approx(1.0)

    # denominators are per object, not shared across the subject/condition
    cell = _cell(tc, 'S1', 'Competitor', 0)
    assert (cell['sumFix'], cell['nTrials']) == (1, 2)
    assert cell['meanFix'] == pytest.approx(0.5)
    assert _cell(tc, 'S1', 'Competitor', 20)['meanFix'] == 0

    assert _cell(tc, 'S1', 'Unrelated', 20)['meanFix'] == pytest.approx(1 / 3)

    # u3 filtered out; u2's missing value counts as not fixating
    cell = _cell(tc, 'S2', 'Target', 0)
    assert (cell['sumFix'], cell['nTrials']) == (1, 2)
    assert cell['meanFix'] == pytest.approx(0.5)
    assert _cell(tc, 'S2', 'Target', 20)['meanFix'] == pytest.approx(1.0)


def test_ntrials_counts_distinct_trials(two_subjects):
    tc = fixation_timecourse(two_subjects)
    s1_target = tc[(tc['Subject'] == 'S1') & (tc['Object'] == 'Target')]
    # two bins per trial must not double the denominator
    assert s1_target['nTrials'].unique().tolist() == [3]
    assert (tc['meanFix'] == tc['sumFix'] / tc['nTrials']).all()


def test_excluded_condition_and_window_do_not_contribute():
    rows = [
        ('S1', 't1', 1, 'Target', 0, True),
        ('S1', 't1', 1, 'Target', 3480, True),
        ('S1', 't1', 1, 'Target', 3500, True),
        ('S1', 't2', 1, 'Target', 0, False),
    ]
    critical = _long(rows)
    filler = _long([('S1', 'f1', 1, 'Target', 0, True)], condition='filler')
    df = pd.concat([critical, filler], ignore_index=True)

    tc = fixation_timecourse(df, exclude_conditions=['filler'], window_ms=3500)
    assert set(tc['Condition']) == {'A'}
    assert tc['Time'].max() == 3480
    assert _cell(tc, 'S1', 'Target', 0)['nTrials'] == 2
    assert _cell(tc, 'S1', 'Target', 0)['sumFix'] == 1


def test_trial_outside_window_is_not_counted():
    # t2 only has samples after the window closes
    rows = [
        ('S1', 't1', 1, 'Target', 0, True),
        ('S1', 't2', 1, 'Target', 4000, True),
    ]
    tc = fixation_timecourse(_long(rows), window_ms=3500)
    cell = _cell(tc, 'S1', 'Target', 0)
    assert cell['nTrials'] == 1
    assert cell['meanFix'] == pytest.approx(1.0)


def test_trial_in_window_without_fixations_is_counted():
    rows = [
        ('S1', 't1', 1, 'Target', 0, True),
        ('S1', 't2', 1, 'Target', 0, False),
    ]
    tc = fixation_timecourse(_long(rows), window_ms=3500)
    assert _cell(tc, 'S1', 'Target', 0)['meanFix'] == pytest.approx(0.5)


def test_zero_trials_gives_missing_mean():
    rows = [
        ('S1', None, 1, 'Target', 0, True),
        ('S1', None, 1, 'Target', 0, False),
    ]
    tc = fixation_timecourse(_long(rows))
    cell = _cell(tc, 'S1', 'Target', 0)
    assert cell['nTrials'] == 0
    assert cell['sumFix'] == 1
    assert math.isnan(cell['meanFix'])


def test_everything_filtered_gives_empty_table():
    tc = fixation_timecourse(_long([('S1', 't1', 0, 'Target', 0, True)]))
    assert tc.empty
    assert 'meanFix' in tc.columns


def test_timecourse_missing_column():
    df = _long([('S1', 't1', 1, 'Target', 0, True)]).drop(columns=['Fix'])
    with pytest.raises(MissingColumnError) as excinfo:
        fixation_timecourse(df)
    assert excinfo.value.missing == ['Fix']


def test_filter_trials_skips_disabled_filters():
    df = pd.DataFrame({'ACC': [1, 0], 'Time': [0, 5000]})
    assert len(filter_trials(df, acc_col=None)) == 2
    assert len(filter_trials(df)) == 1
    assert len(filter_trials(df, acc_col=None, window_ms=3500)) == 1


def test_category_divisor_applied_once_to_one_category():
    agg = pd.DataFrame({
        'Object': ['Target', 'Competitor', 'Unrelated', 'Unrelated'],
        'meanFix': [0.5, 0.5, 0.5, 0.2],
    })
    out = apply_category_divisors(agg, {'Unrelated': 2})
    assert out['meanFix'].tolist() == pytest.approx([0.5, 0.5, 0.25, 0.1])
    assert agg['meanFix'].tolist() == [0.5, 0.5, 0.5, 0.2]


def test_category_divisor_must_be_positive():
    agg = pd.DataFrame({'Object': ['Unrelated'], 'meanFix': [0.5]})
    with pytest.raises(ValueError):
        apply_category_divisors(agg, {'Unrelated': 0})


def test_window_proportions(two_subjects):
    tc = fixation_timecourse(two_subjects)
    win = window_proportions(tc, 0, 40)
    s1 = win[(win['Subject'] == 'S1') & (win['Object'] == 'Target')].iloc[0]
    assert s1['meanFix'] == pytest.approx((2 / 3 + 1.0) / 2)
    only_first = window_proportions(tc, 0, 20)
    s1 = only_first[(only_first['Subject'] == 'S1') & (only_first['Object'] == 'Target')].iloc[0]
    assert s1['meanFix'] == pytest.approx(2 / 3)
    with pytest.raises(ValueError):
        window_proportions(tc, 100, 100)


def test_gaze_diagnostics():
    samples = pd.DataFrame({
        'Subject': ['S1'] * 6,
        'Target': ['t1'] * 4 + ['t2'] * 2,
        'AOI': [0, 1, None, 2, 1, 1],
        'ACC': [1] * 4 + [0] * 2,
        'RT': [800] * 4 + [1200] * 2,
    })
    diag = gaze_diagnostics(samples).set_index('Target')
    assert diag.loc['t1', 'n_samples'] == 4
    assert diag.loc['t1', 'prop_no_aoi'] == pytest.approx(0.5)
    assert diag.loc['t2', 'prop_no_aoi'] == 0
    assert diag.loc['t2', 'RT'] == 1200

    subj = subject_diagnostics(diag.reset_index()).iloc[0]
    assert subj['n_trials'] == 2
    assert subj['mean_prop_no_aoi'] == pytest.approx(0.25)
    assert subj['accuracy'] == pytest.approx(0.5)
    assert subj['mean_rt'] == pytest.approx(1000)


def test_window_drops_bins_reaching_past_bound():
    rows = [
        ('S1', 't1', 1, 'Target', 3450, True),
        ('S1', 't1', 1, 'Target', 3480, True),
    ]
    # 30 ms bins: the bin at 3480 covers samples up to 3509
    tc = fixation_timecourse(_long(rows), window_ms=3500, bin_width=30)
    assert tc['Time'].tolist() == [3450]
    by_start = fixation_timecourse(_long(rows), window_ms=3500)
    assert by_start['Time'].tolist() == [3450, 3480]
