import json

import pytest

from dental_clinic.cli import main

from .conftest import PASSWORD


def test_format_teeth(capsys):
    main(["format-teeth", "11,12,13,15"])
    assert capsys.readouterr().out.strip() == "11-13, 15"


def test_quote_from_variants_file(tmp_path, capsys):
    variants = tmp_path / "variants.json"
    variants.write_text(json.dumps([
        {"name": "Front", "price": "100", "tooth_numbers": [11, 12]},
        {"name": "Other", "price": "80", "is_default": True},
    ]), encoding="utf-8")

    main(["quote", "--variants", str(variants), "--teeth", "11 12 21", "--percent", "10"])
    out = capsys.readouterr().out
    assert "Total:    280.00" in out
    assert "Discount: 28.00 (10.00%)" in out
    assert "Due:      252.00" in out


def test_create_org_and_list(capsys):
    main(["create-org", "--name", "Cli Clinic", "--admin-email", "cli@clinic.test",
          "--admin-name", "Cli Admin", "--admin-password", PASSWORD])
    main(["list", "organizations"])
    main(["list", "treatment-types"])
    out = capsys.readouterr().out
    assert "Organization created:" in out
    assert "Cli Clinic | active" in out
    assert "(default)" in out


def test_reminders_with_nothing_due(capsys):
    main(["reminders", "--hours", "12"])
    assert "No appointments to remind." in capsys.readouterr().out


def test_quote_with_single_variant_catalog(tmp_path, capsys):
    variants = tmp_path / "variants.json"
    variants.write_text(json.dumps([{"name": "Standard", "price": "40"}]), encoding="utf-8")

    main(["quote", "--variants", str(variants), "--teeth", "11,12", "--strict"])
    out = capsys.readouterr().out
    assert "tooth 11: 40.00" in out
    assert "Total:    80.00" in out
    assert "Due:      80.00" in out


def test_quote_rejects_bad_discount(tmp_path):
    variants = tmp_path / "variants.json"
    variants.write_text(json.dumps([{"name": "Standard", "price": "40"}]), encoding="utf-8")

    with pytest.raises(ValueError):
        main(["quote", "--variants", str(variants), "--teeth", "11", "--discount", "ten"])
