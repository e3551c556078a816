from .base import Base, TimestampMixin
from .install import Install, PROVIDER

__all__ = ["Base", "TimestampMixin", "Install", "PROVIDER"]
