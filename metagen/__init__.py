"""
MetaGen Batch Pipeline Package

Queue, credit gate, throttled dispatcher, history persistence and archive
builder for stock-media metadata generation, image-to-prompt and file review.
"""

__version__ = "1.0.0"
__author__ = "MetaGen Team"
