"""Discovery-time helpers: scanning, validation, fingerprinting and name analysis."""

from .discovery import CandidateValidator, DirectoryScanner
from .fingerprint import HashComputer
from .metadata import FilenameInfo, analyze_filename
from .models import PendingFile, ValidationOutcome

__all__ = [
    "CandidateValidator",
    "DirectoryScanner",
    "HashComputer",
    "FilenameInfo",
    "analyze_filename",
    "PendingFile",
    "ValidationOutcome",
]
