"""Error taxonomy for catalog/profile import.

Structural and reference problems are fatal and propagate to the caller.
Only the optional cross-reference enrichment degrades gracefully (the
decomposer catches CrossReferenceLookupError and falls back).
"""
from __future__ import annotations


class ControlSetError(Exception):
    """Base class for every error raised by controlset."""


class ResolutionError(ControlSetError):
    """An import reference could not be turned into a parsed document.

    Raised for a missing local file, a non-success remote response, too many
    redirects, a missing back-matter id, or a back-matter resource without
    links.
    """


class UnsupportedFormatError(ResolutionError):
    """The referenced document has an extension we cannot parse (incl. XML)."""


class DocumentFormatError(ControlSetError, ValueError):
    """The input is neither an OSCAL catalog nor an OSCAL profile."""


class CrossReferenceLookupError(ControlSetError):
    """The cross-reference database could not be opened or queried."""
