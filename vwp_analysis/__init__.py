"""
Visual world analysis package

- metrics.py: Trial filtering, fixation time courses and gaze diagnostics
- group.py: Across-subject summaries and condition statistics
"""
