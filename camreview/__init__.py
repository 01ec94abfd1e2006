"""CamReview: triage trail-camera media into keep, trash and favorites."""

__version__ = "1.0.0"
