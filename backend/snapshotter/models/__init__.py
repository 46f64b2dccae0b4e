"""Models package: re-export all ORM classes for metadata discovery."""
from snapshotter.models.save import Save  # noqa: F401
from snapshotter.models.snapshot import SaveSnapshot, SnapshotStatus  # noqa: F401
