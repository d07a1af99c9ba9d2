"""Draftsmith - agent orchestration core for an AI writing assistant."""

__version__ = "0.1.0"

from draftsmith.config import Config

__all__ = ["Config", "__version__"]
