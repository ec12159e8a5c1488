"""Store feature - staged artifact writes and TTL-based retention."""

from audio_convert.store.results import Artifact, ArtifactWriter, ResultStore

__all__ = [
    "Artifact",
    "ArtifactWriter",
    "ResultStore",
]
