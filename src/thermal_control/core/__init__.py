"""Core utilities shared by the command-line entry points."""

from .utils import drop_privileges, get_original_user, is_root, write_samples_csv

__all__ = ["drop_privileges", "get_original_user", "is_root", "write_samples_csv"]
