"""
Visual world paradigm ETL (Extract-Transform-Load) package

- io.py: Functions for loading and saving fixation reports
- preprocess.py: AOI labelling, time binning and long-format reshaping
"""
