"""
Upload assembler: places files received by a tus server at their final path.
"""

__version__ = "0.1.0"
