"""
facegate: keypoint face validation, geometric embeddings and gallery matching.

Subpackages are plain namespace directories; import modules by full path,
e.g. ``from facegate.session.scanner import ScanSession``.
"""

__all__ = [
    "capture",
    "detectors",
    "quality",
    "recognition",
    "session",
    "config",
    "errors",
    "geometry",
    "io_utils",
    "testing",
    "types",
]
