import pytest

from dental_clinic.teeth import (
    all_permanent_teeth,
    all_primary_teeth,
    find_duplicate_teeth,
    format_tooth_numbers,
    is_primary_tooth,
    is_valid_tooth,
    tooth_name,
    tooth_options,
)


@pytest.mark.parametrize("numbers, expected", [
    ([11, 12, 13], "11-13"),
    ([11, 12], "11, 12"),
    ([11], "11"),
    ([11, 13], "11, 13"),
    ([], ""),
    ([15, 11, 13, 12], "11-13, 15"),
    ([11, 12, 13, 21, 22], "11-13, 21, 22"),
])
def test_format_tooth_numbers(numbers, expected):
    assert format_tooth_numbers(numbers) == expected


def test_format_accepts_generators():
    assert format_tooth_numbers(n for n in (31, 32, 33, 34)) == "31-34"


@pytest.mark.parametrize("number", [11, 18, 28, 41, 51, 55, 85])
def test_valid_teeth(number):
    assert is_valid_tooth(number)


@pytest.mark.parametrize("number", [0, 10, 19, 56, 90, 9, True, "11"])
def test_invalid_teeth(number):
    assert not is_valid_tooth(number)


def test_tooth_names():
    assert tooth_name(11) == "Upper Right Central Incisor"
    assert tooth_name(38) == "Lower Left Third Molar (Wisdom)"
    assert tooth_name(55) == "Upper Right Primary Second Molar"
    assert tooth_name(99) == ""


def test_dentition_sizes():
    assert len(all_permanent_teeth()) == 32
    assert len(all_primary_teeth()) == 20
    assert is_primary_tooth(61)
    assert not is_primary_tooth(21)


def test_tooth_options_labels():
    opts = tooth_options()
    assert opts[0] == {"value": 11, "label": "#11 - Upper Right Central Incisor"}
    assert len(opts) == 32


def test_find_duplicate_teeth():
    assert find_duplicate_teeth([11, 12, 11, 13, 12, 11]) == [11, 12]
    assert find_duplicate_teeth([11, 12]) == []
