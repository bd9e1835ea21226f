from __future__ import annotations


class TraitMatcherError(Exception):
    """Base class for every error raised by the trait matcher."""


class NetworkFetchError(TraitMatcherError):
    """Precomputed artifacts were unreachable after the retry budget was spent."""


class ModelLoadError(TraitMatcherError):
    """The embedding model could not be constructed from its local weights."""


class CorpusMismatchError(TraitMatcherError):
    """Requested corpus does not match the precomputed one. Never surfaced to callers."""


class WorkerProtocolError(TraitMatcherError):
    """A worker message was malformed, or its handler failed."""


class ArtifactFormatError(TraitMatcherError):
    """Trait metadata or the embedding binary is malformed or inconsistent."""


# Error replies name their class; the coordinator re-raises the same type.
ERROR_TYPES: dict[str, type[TraitMatcherError]] = {
    cls.__name__: cls
    for cls in (
        NetworkFetchError,
        ModelLoadError,
        CorpusMismatchError,
        WorkerProtocolError,
        ArtifactFormatError,
    )
}


def error_from_reply(error_type: str, message: str) -> TraitMatcherError:
    return ERROR_TYPES.get(error_type, WorkerProtocolError)(message)
