"""Version information for codesession-tracker."""

__version__ = "1.4.0"
__version_date__ = "2026-10-18"

__title__ = "codesession_tracker"
__description__ = (
    "Track coding sessions and agent runs: time, files, commits, AI tokens and cost"
)
__url__ = "https://github.com/codesession/codesession-tracker"

__author__ = "codesession contributors"

__license__ = "MIT"
__copyright__ = "Copyright 2026 codesession contributors"

__all__ = [
    "__version__",
    "__version_date__",
    "__title__",
    "__description__",
    "__url__",
    "__author__",
    "__license__",
    "__copyright__",
]
