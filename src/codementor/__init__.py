"""
CodeMentor - Ask grounded questions about any GitHub repository.

Indexes a remote repository into a local, cache-coherent knowledge base and
retrieves the files relevant to a natural-language question.
"""

__version__ = "0.1.0"
__author__ = "CodeMentor Team"

# Import main components for easier access
from .main import app

__all__ = ["app", "__version__"]
