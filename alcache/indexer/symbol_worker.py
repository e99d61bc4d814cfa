"""Out-of-process worker for package extraction and field indexing.

Run as ``python -m alcache.indexer.symbol_worker``. Requests arrive as one
JSON object per line on stdin and replies are written the same way to
stdout; log output goes to stderr.

Requests:
    ``process``: extract one package and reply with ``success`` or
    ``error``, then exit.
    ``updateFieldCache``: rescan the source tree and reply with
    ``fieldCacheData`` or ``fieldCacheError``; the worker stays alive.
    ``setLogLevel``: change the log level (verbose, normal or minimal).
"""

import json
import logging
import os
import sys
import traceback
from pathlib import Path
from typing import Any, Dict, List, Optional, TextIO

from ..store.field_store import FieldIndexStore
from .artifact_extractor import (
    extract,
    extract_source_tree,
    open_archive,
    parse_artifact_identity,
    remove_tree,
    sanitize_app_name,
    scratch_dir_name,
    source_tree_dir,
)
from .field_indexer import FieldIndexer
from .metadata_parser import MetadataParser
from .models import ObjectRecord, ProcedureRecord, procedure_key

logger = logging.getLogger(__name__)

LOG_LEVELS = {
    "verbose": logging.DEBUG,
    "normal": logging.INFO,
    "minimal": logging.WARNING,
}


def resolve_log_level(level: Optional[str]) -> int:
    """Map ``verbose``/``normal``/``minimal`` or a standard level name to a level."""
    if not level:
        return logging.INFO
    if level.lower() in LOG_LEVELS:
        return LOG_LEVELS[level.lower()]
    resolved = logging.getLevelName(level.upper())
    return resolved if isinstance(resolved, int) else logging.INFO


class MessageChannel:
    """Writes protocol messages as JSON lines."""

    def __init__(self, stream: TextIO):
        self.stream = stream

    def send(self, message: Dict[str, Any]) -> None:
        self.stream.write(json.dumps(message) + "\n")
        self.stream.flush()

    def progress(self, message: str) -> None:
        self.send({"type": "progress", "message": message})

    def warning(self, message: str) -> None:
        logger.warning(message)
        self.send({"type": "warning", "message": message})


class SymbolWorker:
    """Handles requests from the refresh coordinator."""

    def __init__(self, channel: MessageChannel):
        self.channel = channel
        self.parser = MetadataParser()
        self.indexer = FieldIndexer()

    def handle(self, message: Dict[str, Any]) -> bool:
        """Dispatch one request.

        Returns:
            False when the worker should exit afterwards
        """
        message_type = message.get("type")
        if message_type == "process":
            self._apply_log_level((message.get("options") or {}).get("logLevel"))
            self.handle_process(message.get("appPath", ""), message.get("options") or {})
            return False
        if message_type == "updateFieldCache":
            self._apply_log_level((message.get("options") or {}).get("logLevel"))
            self.handle_update_field_cache(message.get("options") or {})
            return True
        if message_type == "setLogLevel":
            self._apply_log_level(message.get("logLevel"))
            return True

        logger.warning(f"Ignoring unknown message type: {message_type}")
        return True

    @staticmethod
    def _apply_log_level(level: Optional[str]) -> None:
        if level:
            logging.getLogger().setLevel(resolve_log_level(level))

    def handle_process(self, app_path: str, options: Dict[str, Any]) -> None:
        try:
            symbols, procedures = self.process_app_file(app_path, options)
            self.channel.send(
                {
                    "type": "success",
                    "symbols": {name: record.to_dict() for name, record in symbols.items()},
                    "procedures": {
                        key: [item.to_dict() for item in items] for key, items in procedures.items()
                    },
                    "appPath": app_path,
                }
            )
        except Exception as e:
            logger.error(f"Failed to process {app_path}: {e}")
            self.channel.send(
                {
                    "type": "error",
                    "message": str(e),
                    "stack": traceback.format_exc(),
                    "appPath": app_path,
                }
            )

    def process_app_file(self, app_path: str, options: Dict[str, Any]):
        """Extract a package and read its objects and procedures.

        Args:
            app_path: Path of the package
            options: ``extractPath``, ``enableSrcExtraction`` and ``srcExtractionPath``

        Returns:
            Tuple of (objects by name, procedure lists by key)
        """
        extract_path = options.get("extractPath") or options.get("cachePath") or "."
        src_path = options.get("srcExtractionPath") or ""
        with_sources = bool(options.get("enableSrcExtraction")) and bool(src_path)

        symbols: Dict[str, ObjectRecord] = {}
        procedures: Dict[str, List[ProcedureRecord]] = {}
        scratch = Path(extract_path) / scratch_dir_name(app_path)

        try:
            self.channel.progress("Extracting files...")
            tree = extract(app_path, extract_path)

            self.channel.progress("Processing symbols...")
            reference = self.parser.find_symbol_reference(tree.root)
            if reference is not None:
                text = reference.read_text(encoding="utf-8", errors="replace")
                for record in self.parser.parse_from_structured_document(text, app_path):
                    symbols[record.name] = record
            else:
                logger.info(f"No symbol reference found in {Path(app_path).name}")

            if with_sources:
                with open_archive(app_path) as archive:
                    extracted = extract_source_tree(
                        app_path,
                        archive,
                        src_path,
                        on_progress=self.channel.progress,
                        on_warning=self.channel.warning,
                    )
                if not extracted:
                    self.channel.warning(f"Could not derive app name and version from {Path(app_path).name}")
                else:
                    self._read_source_tree(app_path, src_path, symbols, procedures)
        finally:
            remove_tree(scratch)

        logger.info(
            f"Processed {Path(app_path).name}: {len(symbols)} objects, "
            f"{len(procedures)} procedure lists"
        )
        return symbols, procedures

    def _read_source_tree(
        self,
        app_path: str,
        src_path: str,
        symbols: Dict[str, ObjectRecord],
        procedures: Dict[str, List[ProcedureRecord]],
    ) -> None:
        artifact = parse_artifact_identity(app_path)
        source_dir = source_tree_dir(artifact, src_path)
        files = sorted(source_dir.rglob("*.al")) if source_dir.is_dir() else []
        self.channel.progress(f"Found {len(files)} AL files in source dir")

        result = self.parser.parse_source_files(files, app_path)
        for warning in result.warnings:
            self.channel.warning(warning)
        for record in result.objects:
            symbols[record.name] = record
        for (object_type, object_name), items in result.procedures.items():
            procedures[procedure_key(object_type, object_name)] = items

    def handle_update_field_cache(self, options: Dict[str, Any]) -> None:
        try:
            src_path = options.get("srcExtractionPath")
            storage_path = options.get("globalStoragePath")
            if not src_path or not storage_path:
                raise ValueError("srcExtractionPath and globalStoragePath are required")

            # Read-only here; the coordinator persists the reply
            store = FieldIndexStore(storage_path)
            store.load()

            exclude = []
            if options.get("appName"):
                exclude.append(os.path.join(src_path, sanitize_app_name(options["appName"])))

            snapshot = self.indexer.update_index(src_path, store.snapshot, exclude_dirs=exclude)
            self.channel.send(snapshot.to_message())
        except Exception as e:
            logger.error(f"Field cache update failed: {e}")
            self.channel.send({"type": "fieldCacheError", "message": str(e)})


def main(stdin: Optional[TextIO] = None, stdout: Optional[TextIO] = None) -> int:
    """Serve requests until ``process`` completes or stdin closes."""
    logging.basicConfig(
        level=resolve_log_level(os.getenv("LOG_LEVEL", "INFO")),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )
    stdin = stdin or sys.stdin
    channel = MessageChannel(stdout or sys.stdout)
    worker = SymbolWorker(channel)

    try:
        while True:
            line = stdin.readline()
            if not line:
                break
            line = line.strip()
            if not line:
                continue
            try:
                message = json.loads(line)
            except json.JSONDecodeError as e:
                logger.warning(f"Ignoring malformed request: {e}")
                continue
            if not worker.handle(message):
                break
    except Exception as e:
        logger.error(f"Worker crashed: {e}", exc_info=True)
        channel.send(
            {"type": "error", "message": str(e), "stack": traceback.format_exc(), "appPath": None}
        )
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
