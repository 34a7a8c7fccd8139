"""StudyTrack — local-first study session tracker."""

__version__ = "0.1.0"
