"""Local mirror schema."""

from zuno.db import models
from zuno.db.base import Base

__all__ = ["Base", "models"]
