from pytest_flakewatch.infrastructure.collection.recorder import BuildRecorder

__all__ = ["BuildRecorder"]
