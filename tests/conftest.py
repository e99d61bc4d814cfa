"""Pytest configuration and fixtures."""
import json
import zipfile
from pathlib import Path

import pytest


def symbol_reference(**arrays):
    """Build a SymbolReference.json document from array name -> entries."""
    return json.dumps(arrays)


def write_app(path: Path, members: dict, header: bytes = b"") -> Path:
    """Write a package: optional binary header followed by a zip payload."""
    path.parent.mkdir(parents=True, exist_ok=True)
    zip_path = path.with_suffix(".zip.tmp")
    with zipfile.ZipFile(zip_path, "w") as archive:
        for name, content in members.items():
            archive.writestr(name, content)
    payload = zip_path.read_bytes()
    zip_path.unlink()
    path.write_bytes(header + payload)
    return path


@pytest.fixture
def make_app(tmp_path):
    """Factory creating ``.app`` packages under ``tmp_path/.alpackages``."""

    def _make(file_name: str, members: dict, header: bytes = b"NAVX") -> Path:
        return write_app(tmp_path / ".alpackages" / file_name, members, header)

    return _make


@pytest.fixture
def customer_app(make_app):
    """A package with one table, one page and source files."""
    reference = symbol_reference(
        Tables=[{"Id": 18, "Name": "Customer", "Properties": [{"Name": "Caption", "Value": "Customer"}]}],
        Pages=[{"Id": 21, "Name": "Customer Card"}],
    )
    table_source = (
        'table 18 Customer\n'
        '{\n'
        '    fields\n'
        '    {\n'
        '        field(1; "No."; Code[20]) { }\n'
        '        field(2; Name; Text[100]) { }\n'
        '    }\n'
        '\n'
        '    procedure GetName(): Text\n'
        '    begin\n'
        '    end;\n'
        '}\n'
    )
    page_source = (
        'page 21 "Customer Card"\n'
        '{\n'
        '    SourceTable = Customer;\n'
        '}\n'
    )
    return make_app(
        "Microsoft_Base Application_24.0.0.0.app",
        {
            "SymbolReference.json": "\ufeff" + reference,
            "NavxManifest.xml": "<Package/>",
            "src/Tables/Customer.Table.al": table_source,
            "src/Pages/Customer%2520Card.Page.al": page_source,
        },
    )


@pytest.fixture
def corrupt_app(tmp_path):
    """A file with a package extension that is not an archive."""
    path = tmp_path / ".alpackages" / "Broken_Thing_1.0.0.0.app"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"this is not a zip file at all")
    return path
