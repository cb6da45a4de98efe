"""Utility functions for thermal control."""

import csv
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Tuple

from ..data import TelemetrySample


def is_root() -> bool:
    return os.geteuid() == 0


def get_original_user() -> Optional[Tuple[int, int]]:
    """
    Get the UID and GID of the user who invoked sudo.

    Returns:
        Tuple of (uid, gid) if running under sudo, None otherwise
    """
    sudo_uid = os.environ.get("SUDO_UID")
    sudo_gid = os.environ.get("SUDO_GID")

    if sudo_uid and sudo_gid:
        return (int(sudo_uid), int(sudo_gid))
    return None


@contextmanager
def drop_privileges() -> Iterator[None]:
    """
    Temporarily act as the user who invoked sudo.

    Files created inside the block are owned by that user rather than root.
    Outside sudo this does nothing.
    """
    user_info = get_original_user()
    if user_info is None or not is_root():
        yield
        return

    uid, gid = user_info
    saved_euid = os.geteuid()
    saved_egid = os.getegid()

    try:
        # Group first, then user
        os.setegid(gid)
        os.seteuid(uid)
        yield
    finally:
        os.seteuid(saved_euid)
        os.setegid(saved_egid)


def write_samples_csv(path: Path, samples: Iterable[TelemetrySample]) -> int:
    """
    Write telemetry samples to CSV as the invoking user.

    Columns are the union of every sample's fields, so sensors that appear
    mid-run still get a column.

    Returns:
        Number of rows written
    """
    rows = [s.to_dict() for s in samples]
    columns: List[str] = []
    for row in rows:
        for key in row:
            if key not in columns:
                columns.append(key)

    with drop_privileges():
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", newline="") as f:
            writer = csv.DictWriter(f, fieldnames=columns)
            writer.writeheader()
            writer.writerows(rows)
    return len(rows)
