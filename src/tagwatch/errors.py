"""Exception hierarchy shared by the correlation and detection layers."""


class TagwatchError(Exception):
    """Base class for all tagwatch errors."""


class ParseError(TagwatchError):
    """Advertisement payload could not be decoded.

    Raised inside the fingerprinter only; ``fingerprint()`` converts it to ``None``.
    """


class AmbiguousLinkError(TagwatchError):
    """More than one canonical device matched a fingerprint.

    The linker resolves the tie deterministically and logs this error as a
    warning instead of raising it.
    """

    def __init__(self, fingerprint: str, device_ids: list[int]) -> None:
        self.fingerprint = fingerprint
        self.device_ids = device_ids
        super().__init__(f"Fingerprint {fingerprint} matches devices {device_ids}")


class StoreUnavailable(TagwatchError):
    """The correlation store failed an I/O operation."""


class DetectionCancelled(TagwatchError):
    """A detection pass was cancelled before it completed."""
