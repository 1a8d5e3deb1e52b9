"""
Command line tools installed with siftmatch.

* :mod:`siftmatch.scripts.match_image_pair`: extract, match and verify the features of two images.
"""
