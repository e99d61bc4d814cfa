"""Tests for the worker request loop, run in-process."""

import io
import json
import logging

from alcache.indexer.symbol_worker import main, resolve_log_level


def run_worker(*messages):
    """Feed messages to the worker loop and return (exit code, replies)."""
    stdin = io.StringIO("".join(json.dumps(message) + "\n" for message in messages))
    stdout = io.StringIO()
    code = main(stdin=stdin, stdout=stdout)
    replies = [json.loads(line) for line in stdout.getvalue().splitlines() if line.strip()]
    return code, replies


def process_request(app_path, tmp_path, with_sources=True):
    return {
        "type": "process",
        "appPath": str(app_path),
        "options": {
            "cachePath": str(tmp_path / "cache"),
            "extractPath": str(tmp_path / "extract"),
            "enableSrcExtraction": with_sources,
            "srcExtractionPath": str(tmp_path / "src"),
            "logLevel": "normal",
        },
    }


class TestProcess:
    """Tests for the process request."""

    def test_success_with_sources(self, customer_app, tmp_path):
        code, replies = run_worker(process_request(customer_app, tmp_path))

        assert code == 0
        result = replies[-1]
        assert result["type"] == "success"
        assert result["appPath"] == str(customer_app)
        assert set(result["symbols"]) == {"Customer", "Customer Card"}
        assert result["symbols"]["Customer"]["id"] == 18
        assert result["procedures"]["table:Customer"][0]["name"] == "GetName"
        assert result["procedures"]["table:Customer"][0]["returnType"] == "Text"
        assert any(reply["type"] == "progress" for reply in replies[:-1])

        assert (tmp_path / "src" / "Base Application" / "24.0.0.0" / "Tables" / "Customer.Table.al").exists()
        assert list((tmp_path / "extract").iterdir()) == []

    def test_success_without_sources(self, customer_app, tmp_path):
        code, replies = run_worker(process_request(customer_app, tmp_path, with_sources=False))

        result = replies[-1]
        assert result["type"] == "success"
        assert result["symbols"]["Customer"]["metadata"]["Properties"][0]["Value"] == "Customer"
        assert result["procedures"] == {}
        assert not (tmp_path / "src").exists()

    def test_corrupt_archive_reports_error(self, corrupt_app, tmp_path):
        code, replies = run_worker(process_request(corrupt_app, tmp_path))

        assert code == 0
        assert replies[-1]["type"] == "error"
        assert "not a valid archive" in replies[-1]["message"]
        assert replies[-1]["appPath"] == str(corrupt_app)

    def test_worker_exits_after_process(self, corrupt_app, tmp_path):
        """Requests after process are not read."""
        code, replies = run_worker(process_request(corrupt_app, tmp_path), {"type": "setLogLevel", "logLevel": "verbose"})

        assert [reply["type"] for reply in replies] == ["progress", "error"]


class TestFieldCache:
    """Tests for the updateFieldCache request."""

    def test_update_field_cache(self, tmp_path):
        source = tmp_path / "src" / "Base" / "1.0" / "Customer.Table.al"
        source.parent.mkdir(parents=True)
        source.write_text('table 18 Customer\n{\n    fields\n    {\n        field(1; "No."; Code[20]) { }\n    }\n}\n')
        request = {
            "type": "updateFieldCache",
            "options": {
                "srcExtractionPath": str(tmp_path / "src"),
                "globalStoragePath": str(tmp_path / "storage"),
            },
        }

        code, replies = run_worker(request, request)

        assert code == 0
        assert [reply["type"] for reply in replies] == ["fieldCacheData", "fieldCacheData"]
        assert replies[0]["tableFieldsCache"] == {"Customer": ["No."]}
        assert replies[0]["reparsed"] == [str(source.resolve())]
        # Nothing is persisted by the worker, so the second scan parses again
        assert replies[1]["reparsed"] == [str(source.resolve())]

    def test_own_app_is_excluded(self, tmp_path):
        mine = tmp_path / "src" / "My App" / "1.0" / "Mine.Table.al"
        mine.parent.mkdir(parents=True)
        mine.write_text("table 50100 Mine\n{\n    fields\n    {\n        field(1; Code; Code[20]) { }\n    }\n}\n")
        request = {
            "type": "updateFieldCache",
            "options": {
                "srcExtractionPath": str(tmp_path / "src"),
                "globalStoragePath": str(tmp_path / "storage"),
                "appName": "My App",
            },
        }

        _, replies = run_worker(request)

        assert replies[0]["tableFieldsCache"] == {}

    def test_missing_options(self):
        _, replies = run_worker({"type": "updateFieldCache", "options": {}})

        assert replies[0]["type"] == "fieldCacheError"


class TestLoop:
    """Tests for the request loop itself."""

    def test_malformed_and_unknown_requests_are_ignored(self):
        stdin = io.StringIO("not json\n\n" + json.dumps({"type": "mystery"}) + "\n")
        stdout = io.StringIO()

        assert main(stdin=stdin, stdout=stdout) == 0
        assert stdout.getvalue() == ""

    def test_resolve_log_level(self):
        assert resolve_log_level("verbose") == logging.DEBUG
        assert resolve_log_level("Minimal") == logging.WARNING
        assert resolve_log_level("error") == logging.ERROR
        assert resolve_log_level(None) == logging.INFO
        assert resolve_log_level("nonsense") == logging.INFO
