import argparse
import asyncio
import os
import sys
from pathlib import Path

# Ensure src is in pythonpath
sys.path.append(os.path.join(os.path.dirname(__file__), "..", "src"))

from dotenv import load_dotenv
load_dotenv()

from kb_search_server.api.dependencies import get_indexing_service
from kb_search_server.embeddings.models import IndexingStatus, Source, parse_level

TEXT_SUFFIXES = {".txt", ".md"}


async def main(folder: Path, level_name: str, topic: str | None):
    level = parse_level(level_name)
    if level is None:
        print(f"Unknown level: {level_name}")
        sys.exit(2)

    files = sorted(p for p in folder.rglob("*") if p.suffix.lower() in TEXT_SUFFIXES)
    print(f"Found {len(files)} text files in {folder}.")
    if not files:
        return

    print("Initializing indexer...")
    indexer = get_indexing_service()

    failed = 0
    for i, path in enumerate(files):
        print(f"Indexing ({i+1}/{len(files)}): {path.name}")
        text = path.read_text(encoding="utf-8", errors="replace")
        source = Source(name=path.name, level=level, topic=topic)
        result = await indexer.create_and_index(source, text)

        if result.indexing_status is IndexingStatus.SUCCESS:
            print(f"  {result.chunks_written} chunks written")
        else:
            failed += 1
            print(f"  failed: {result.indexing_error}")
        for err in result.chunk_errors:
            print(f"  chunk {err.chunk_number} skipped: {err.error}")

    print(f"Done! {len(files) - failed} indexed, {failed} failed.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Index a folder of text files as knowledge sources.")
    parser.add_argument("folder", type=Path)
    parser.add_argument("--level", default="High")
    parser.add_argument("--topic", default=None)
    args = parser.parse_args()
    asyncio.run(main(args.folder, args.level, args.topic))
