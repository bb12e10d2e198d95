"""Image Flow Engine: chains of generative image edits over batches of images."""

__version__ = "1.0.0"
