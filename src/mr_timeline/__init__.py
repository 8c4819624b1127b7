"""GitLab merge request timeline and cycle time analysis."""

__version__ = "0.1.0"
