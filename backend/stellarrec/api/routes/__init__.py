# API Routes Module
from stellarrec.api.routes import (
    errors,
    monitoring,
    notifications,
    submissions,
)

__all__ = [
    "errors",
    "monitoring",
    "notifications",
    "submissions",
]
