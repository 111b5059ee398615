# src/engine/targets.py
"""
Target resolution: turns a scheduled scan's selection into the images to scan.
"""
import re
from typing import Callable, List

from api.schemas import ImageInfo, ScheduledScanInfo
from engine.exceptions import InvalidPattern, SelectionModeNotImplemented
from engine.models import SelectionMode

InventoryLoader = Callable[[], List[ImageInfo]]


def compile_pattern(pattern: str):
    """
    Compile an image pattern. A pattern that does not compile is a configuration error.
    """
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise InvalidPattern(pattern, str(exc)) from exc


def resolve_targets(scheduled_scan: ScheduledScanInfo, selected: List[ImageInfo],
                    inventory: InventoryLoader) -> List[ImageInfo]:
    """
    Return the images a scheduled scan covers.

    ``selected`` holds the explicitly chosen images (SPECIFIC mode) and
    ``inventory`` loads every known image; it is only called when needed.
    """
    mode = SelectionMode(scheduled_scan.selection_mode)
    if mode is SelectionMode.SPECIFIC:
        return list(selected)
    if mode is SelectionMode.PATTERN:
        if not scheduled_scan.image_pattern:
            return []
        regex = compile_pattern(scheduled_scan.image_pattern)
        return [image for image in inventory() if regex.search(image.reference)]
    if mode is SelectionMode.ALL:
        return list(inventory())
    raise SelectionModeNotImplemented(mode.value)
