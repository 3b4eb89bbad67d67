"""Label sets and the basic labelers that produce them."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path

log = logging.getLogger(__name__)

MIG_STRATEGY_NONE = "none"
MIG_STRATEGY_SINGLE = "single"
MIG_STRATEGY_MIXED = "mixed"

MACHINE_TYPE_UNKNOWN = "unknown"

_ALLOWED = set("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_. ")


class LabelError(Exception):
    """Raised when labels cannot be generated."""


class Labels(dict):
    """A mapping of label keys to label values; also a labeler of itself."""

    def labels(self) -> Labels:
        return self


@dataclass(frozen=True)
class Empty:
    """A labeler that produces no labels."""

    def labels(self) -> Labels:
        return Labels()


class LabelerList(list):
    """A list of labelers that is itself a labeler.

    Labels from later labelers overwrite those from earlier ones.
    """

    def labels(self) -> Labels:
        merged = Labels()
        for labeler in self:
            try:
                produced = labeler.labels()
            except LabelError as err:
                raise LabelError(f"error generating labels: {err}") from err
            if produced:
                merged.update(produced)
        return merged


def merge(*labelers) -> LabelerList:
    """Combine several labelers into a single composite labeler."""
    return LabelerList(labelers)


def sanitise(text: str) -> str:
    """Drop disallowed characters and join the remaining words with dashes."""
    kept = "".join(ch for ch in text if ch in _ALLOWED)
    return "-".join(kept.split())


def mig_strategy_labeler(strategy: str):
    """Return a labeler for the MIG strategy label."""
    if strategy == MIG_STRATEGY_NONE:
        return Empty()
    return Labels({"nvidia.com/mig.strategy": strategy})


def new_timestamp_labeler(no_timestamp: bool):
    """Return a labeler carrying the current Unix time, unless disabled."""
    if no_timestamp:
        return Empty()
    return Labels({"nvidia.com/gfd.timestamp": str(int(time.time()))})


def get_machine_type(path) -> str:
    """Read the machine type from a file; an empty path means unknown."""
    if not path:
        return MACHINE_TYPE_UNKNOWN
    try:
        data = Path(path).read_text()
    except OSError as err:
        raise LabelError(f"could not open machine type file: {err}") from err
    return data.strip()


def new_machine_type_labeler(machine_type_path) -> Labels:
    """Return a labeler for the machine type, falling back to unknown."""
    try:
        machine_type = get_machine_type(machine_type_path)
    except LabelError as err:
        log.warning("Error getting machine type from %s: %s", machine_type_path, err)
        machine_type = MACHINE_TYPE_UNKNOWN
    return Labels({"nvidia.com/gpu.machine": sanitise(machine_type)})