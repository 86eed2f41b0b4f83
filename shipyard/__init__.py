"""shipyard: release-build orchestration for multi-binary projects."""

__version__ = "0.3.0"
