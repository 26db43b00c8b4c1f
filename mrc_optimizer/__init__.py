"""
MRC Optimizer - Adaptive, memory-bounded compression for scanned documents.

Pages are split into a lossless text mask and a blurred, downscaled
background, encoded separately, and assembled in page order in batches
sized by document length. Results are never larger than the input.
"""

__version__ = "1.0.0"
__author__ = "MRC Optimizer"
