"""Command line entry point for the tabular RAG service.

Provides ``ingest``, ``ask``, ``list`` and ``delete`` commands over a
locally persisted document store.
"""

import argparse
import json
import logging
import mimetypes
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from tabular_rag.config import Settings
from tabular_rag.errors import RagError
from tabular_rag.service import RagService, build_service

logger = logging.getLogger(__name__)


def get_settings() -> Settings:
    """Load environment variables and return application settings."""
    load_dotenv()
    return Settings.from_env()


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def cmd_ingest(service: RagService, args: argparse.Namespace) -> int:
    path = Path(args.file)
    try:
        raw = path.read_bytes()
    except OSError as e:
        logger.error(f"Cannot read {path}: {e}")
        _print_json({"success": False, "filename": path.name, "error": str(e)})
        return 1
    content_type, _ = mimetypes.guess_type(path.name)
    result = service.ingest(raw, path.name, len(raw), content_type)
    _print_json(result.model_dump(mode="json"))
    return 0 if result.success else 1


def cmd_ask(service: RagService, args: argparse.Namespace) -> int:
    answer = service.ask(args.question, args.doc or None)
    print(answer)
    return 0


def cmd_list(service: RagService, args: argparse.Namespace) -> int:
    _print_json([d.model_dump(mode="json") for d in service.list_documents()])
    return 0


def cmd_delete(service: RagService, args: argparse.Namespace) -> int:
    result = service.delete_document(args.document_id)
    _print_json(result.model_dump(mode="json"))
    return 0 if result.success else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tabular-rag",
        description="Ask questions about uploaded CSV files.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_ingest = sub.add_parser("ingest", help="Parse, embed and store a CSV file")
    p_ingest.add_argument("file", help="Path to a CSV file")
    p_ingest.set_defaults(handler=cmd_ingest)

    p_ask = sub.add_parser("ask", help="Ask a question about stored CSV data")
    p_ask.add_argument("question")
    p_ask.add_argument(
        "--doc",
        action="append",
        metavar="ID",
        help="Restrict the question to a document (repeatable)",
    )
    p_ask.set_defaults(handler=cmd_ask)

    p_list = sub.add_parser("list", help="List stored documents, newest first")
    p_list.set_defaults(handler=cmd_list)

    p_delete = sub.add_parser("delete", help="Delete a document and its chunks")
    p_delete.add_argument("document_id")
    p_delete.set_defaults(handler=cmd_delete)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        service = build_service(settings)
    except RagError as e:
        logger.error(f"Failed to initialize service: {e}")
        return 1

    try:
        return args.handler(service, args)
    except RagError as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        service.close()


if __name__ == "__main__":
    sys.exit(main())
