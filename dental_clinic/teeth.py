from __future__ import annotations

from typing import Iterable

# FDI notation: first digit = quadrant, second = position from the midline.
# Permanent teeth: quadrants 1-4, positions 1-8. Primary teeth: quadrants 5-8, positions 1-5.
PERMANENT_QUADRANTS = {1: "Upper Right", 2: "Upper Left", 3: "Lower Left", 4: "Lower Right"}
PRIMARY_QUADRANTS = {5: "Upper Right", 6: "Upper Left", 7: "Lower Left", 8: "Lower Right"}

PERMANENT_POSITIONS = {
    1: "Central Incisor",
    2: "Lateral Incisor",
    3: "Canine",
    4: "First Premolar",
    5: "Second Premolar",
    6: "First Molar",
    7: "Second Molar",
    8: "Third Molar (Wisdom)",
}

PRIMARY_POSITIONS = {
    1: "Central Incisor",
    2: "Lateral Incisor",
    3: "Canine",
    4: "First Molar",
    5: "Second Molar",
}


def is_valid_tooth(number: int) -> bool:
    if isinstance(number, bool) or not isinstance(number, int):
        return False
    quadrant, position = divmod(number, 10)
    if quadrant in PERMANENT_QUADRANTS:
        return position in PERMANENT_POSITIONS
    if quadrant in PRIMARY_QUADRANTS:
        return position in PRIMARY_POSITIONS
    return False


def is_primary_tooth(number: int) -> bool:
    return is_valid_tooth(number) and number // 10 in PRIMARY_QUADRANTS


def tooth_name(number: int) -> str:
    """Human name of a tooth, '' for numbers outside FDI notation."""
    if not is_valid_tooth(number):
        return ""
    quadrant, position = divmod(number, 10)
    if quadrant in PERMANENT_QUADRANTS:
        return f"{PERMANENT_QUADRANTS[quadrant]} {PERMANENT_POSITIONS[position]}"
    return f"{PRIMARY_QUADRANTS[quadrant]} Primary {PRIMARY_POSITIONS[position]}"


def all_permanent_teeth() -> list[int]:
    return [q * 10 + p for q in PERMANENT_QUADRANTS for p in PERMANENT_POSITIONS]


def all_primary_teeth() -> list[int]:
    return [q * 10 + p for q in PRIMARY_QUADRANTS for p in PRIMARY_POSITIONS]


def tooth_options() -> list[dict]:
    """Flat catalog for dropdowns: value / label like '#11 - Upper Right Central Incisor'."""
    return [{"value": n, "label": f"#{n} - {tooth_name(n)}"} for n in all_permanent_teeth()]


def find_duplicate_teeth(numbers: Iterable[int]) -> list[int]:
    seen: set[int] = set()
    dup: list[int] = []
    for n in numbers:
        if n in seen and n not in dup:
            dup.append(n)
        seen.add(n)
    return dup


def format_tooth_numbers(numbers: Iterable[int]) -> str:
    """
    Compact rendering of a tooth selection:
    - ascending order
    - runs of 3 or more consecutive numbers collapse to 'start-end'
    - runs of exactly 2 stay as 'a, b'

    [11, 12, 13, 15] -> "11-13, 15"
    """
    ordered = sorted(numbers)
    if not ordered:
        return ""

    parts: list[str] = []
    start = end = ordered[0]
    for n in ordered[1:] + [None]:
        if n is not None and n == end + 1:
            end = n
            continue
        if start == end:
            parts.append(str(start))
        elif end == start + 1:
            parts.append(f"{start}, {end}")
        else:
            parts.append(f"{start}-{end}")
        if n is not None:
            start = end = n

    return ", ".join(parts)
