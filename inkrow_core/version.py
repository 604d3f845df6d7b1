"""
Inkrow Version Management - Centralized version for all components

Single source of truth for the inkrow version. The persisted document
format carries its own schema version (DOCUMENT_VERSION).

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-01-12
"""

__version__ = "0.3.0"

VERSION_MAJOR = 0
VERSION_MINOR = 3
VERSION_PATCH = 0
VERSION_SUFFIX = ""

BUILD_DATE = "2026-01-12"
BUILD_ORG = "Adservio"

# Schema version of RowManager.serialize() payloads
DOCUMENT_VERSION = 1

VERSION_FULL = f"{VERSION_MAJOR}.{VERSION_MINOR}.{VERSION_PATCH}"
if VERSION_SUFFIX:
    VERSION_FULL = f"{VERSION_FULL}-{VERSION_SUFFIX}"


def get_version() -> str:
    """Get the current inkrow version string."""
    return __version__


def get_version_info() -> dict:
    """Get detailed version information."""
    return {
        "version": __version__,
        "full": VERSION_FULL,
        "document_version": DOCUMENT_VERSION,
        "build_date": BUILD_DATE,
        "organization": BUILD_ORG,
    }


def get_short_banner() -> str:
    """Get a compact version banner."""
    return f"inkrow v{__version__} | {BUILD_ORG} | {BUILD_DATE}"
