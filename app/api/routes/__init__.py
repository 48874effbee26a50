from . import courses, tasks

__all__ = ["courses", "tasks"]
