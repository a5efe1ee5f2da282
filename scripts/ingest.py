#!/usr/bin/env python
"""Bulk-ingest a directory of documents for one owner.

Usage:
    python scripts/ingest.py ./docs --owner alice            # Ingest supported files
    python scripts/ingest.py ./docs --owner alice --rebuild  # Clear the index and documents first
    python scripts/ingest.py ./docs --owner alice --verbose  # One line per document
"""
import argparse
import asyncio
import sys
from datetime import datetime
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from groundrag import config, db
from groundrag.logging_config import configure_logging
from groundrag.rag.extractors import MIME_ALIASES
from groundrag.rag.ingest import IngestOutcome, IngestPipeline, IngestRequest
from groundrag.rag.store_faiss import get_vector_store
import structlog

logger = structlog.get_logger()


class ProgressReporter:
    """Simple progress reporter for CLI."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self.start_time = None

    def start(self, message: str):
        """Start progress reporting."""
        self.start_time = datetime.now()
        print(f"\n{'=' * 60}")
        print(f"  {message}")
        print(f"{'=' * 60}\n")

    def update(self, current: int, total: int, outcome: IngestOutcome):
        """Update progress."""
        percentage = (current / total) * 100 if total > 0 else 0
        bar_length = 40
        filled = int(bar_length * current / total) if total > 0 else 0
        bar = "█" * filled + "░" * (bar_length - filled)

        name = outcome.filename or "?"
        print(
            f"\r  [{bar}] {percentage:5.1f}% ({current}/{total}) {name[:30]:<30}",
            end="",
            flush=True,
        )

        if self.verbose:
            status = f"{outcome.chunk_count} chunks" if outcome.ok else f"FAILED: {outcome.error}"
            print(f"  {status}")

    def finish(self, stats: dict, outcomes: list):
        """Finish progress reporting."""
        print("\n")
        elapsed_seconds = (datetime.now() - self.start_time).total_seconds()

        print(f"{'=' * 60}")
        print("  Ingestion Complete!")
        print(f"{'=' * 60}\n")
        print(f"  Documents processed:  {stats['documents_processed']}")
        print(f"  Documents failed:     {stats['documents_failed']}")
        print(f"  Chunks created:       {stats['chunks_created']}")
        print(f"  Embeddings generated: {stats['embeddings_generated']}")
        print(f"  Time elapsed:         {elapsed_seconds:.1f}s")

        if stats["chunks_created"] > 0 and elapsed_seconds > 0:
            rate = stats["chunks_created"] / elapsed_seconds
            print(f"  Indexing rate:        {rate:.1f} chunks/sec")

        print(f"\n{'=' * 60}\n")

        failed = [o for o in outcomes if not o.ok]
        if failed:
            print(f"Warning: {len(failed)} document(s) failed to ingest:")
            for outcome in failed:
                print(f"   {outcome.filename}: {outcome.error_type}: {outcome.error}")
            print()

        if stats["documents_processed"] > 0:
            print(f"Index ready at: {config.VECTOR_INDEX_PATH}")
            print(f"Database at: {config.DB_PATH}\n")


def discover_documents(root: Path) -> list:
    """Find files whose extension maps to a supported format."""
    if not root.exists():
        raise FileNotFoundError(f"Directory not found: {root}")

    files = sorted(
        path for path in root.rglob("*")
        if path.is_file() and path.suffix.lower().lstrip(".") in MIME_ALIASES
    )
    logger.info("documents_discovered", count=len(files), root=str(root))
    return files


async def main():
    """Main entry point for the ingest script."""
    parser = argparse.ArgumentParser(
        description="Ingest a directory of documents into the RAG index",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/ingest.py ./docs --owner alice
  python scripts/ingest.py ./docs --owner alice --rebuild
        """,
    )

    parser.add_argument("directory", type=Path, help="Directory to ingest recursively")
    parser.add_argument("--owner", required=True, help="Owner id the documents belong to")
    parser.add_argument(
        "--rebuild",
        action="store_true",
        help="Clear the vector index and all stored documents before ingesting",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Show one line per document",
    )

    args = parser.parse_args()

    configure_logging("WARNING" if not args.verbose else None)
    progress = ProgressReporter(verbose=args.verbose)

    try:
        print("\nConfiguration:")
        print(f"   Directory:        {args.directory}")
        print(f"   Owner:            {args.owner}")
        print(f"   Embedding model:  {config.EMBEDDING_MODEL}")
        print(f"   Chunk size:       {config.CHUNK_SIZE} chars")
        print(f"   Chunk overlap:    {config.CHUNK_OVERLAP} chars")
        print(f"   Concurrency:      {config.INGEST_CONCURRENCY}")

        files = discover_documents(args.directory)
        if not files:
            print("\nNo supported documents found.\n")
            return

        store = await get_vector_store()
        if args.rebuild:
            print("\nRebuild mode: the vector index and all documents will be cleared!")
            print("   Press Ctrl+C within 3 seconds to cancel...")
            await asyncio.sleep(3)
            await store.rebuild_index()
            db.clear_all_documents()

        progress.start(f"Ingesting {len(files)} documents")

        pipeline = IngestPipeline(vector_store=store)
        requests = [
            IngestRequest(
                data=path.read_bytes(),
                mime_type=path.suffix.lower().lstrip("."),
                owner_id=args.owner,
                metadata={"filename": str(path.relative_to(args.directory))},
            )
            for path in files
        ]

        outcomes = await pipeline.ingest_many(requests, progress_callback=progress.update)

        progress.finish(pipeline.stats, outcomes)

        if any(not outcome.ok for outcome in outcomes):
            sys.exit(1)

    except KeyboardInterrupt:
        print("\n\nIngestion cancelled by user.\n")
        sys.exit(1)

    except FileNotFoundError as e:
        print(f"\nError: {e}\n")
        sys.exit(1)

    except Exception as e:
        print(f"\nError: {e}\n")
        logger.error("ingest_script_failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
