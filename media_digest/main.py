"""
Command line entry point for the media digest application.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Optional, Union

from dotenv import load_dotenv

from media_digest.config import config
from media_digest.core.orchestrator import SummaryOrchestrator, create_orchestrator
from media_digest.models.schemas import (
    FileSource,
    ProgressEvent,
    RemoteSource,
    Summary,
    SummaryOptions,
    Transcript,
)
from media_digest.utils.error_handling import BadRequestError, MediaDigestError
from media_digest.utils.logger import logging


def source_from_argument(target: str) -> Union[RemoteSource, FileSource]:
    """A URL becomes a RemoteSource; anything else must be a local file."""
    if target.startswith(("http://", "https://")):
        return RemoteSource(url=target)
    path = Path(target).expanduser()
    if not path.is_file():
        raise BadRequestError(f"No such file: {target}")
    return FileSource(name=path.name, path=path)


def print_event(event: ProgressEvent) -> None:
    if event.is_terminal:
        return
    print(f"[{event.progress:3d}%] {event.message}", file=sys.stderr)


def save_result(result: Union[Summary, Transcript], output_file: str) -> Path:
    """Save the result to a JSON file."""
    output_file = Path(output_file)
    output_file.parent.mkdir(parents=True, exist_ok=True)
    with open(output_file, "w", encoding="utf-8") as f:
        json.dump(result.model_dump(), f, indent=2, default=str)

    logging.info(f"Result saved to: {output_file}")
    return output_file


async def digest(
    target: str,
    max_words: int = config.DEFAULT_SUMMARY_WORDS,
    prompt: Optional[str] = None,
    transcript_only: bool = False,
    orchestrator: Optional[SummaryOrchestrator] = None,
) -> Union[Summary, Transcript]:
    """
    Summarize or transcribe a video URL or a local video file.

    Args:
        target: Video URL or path of a local video file
        max_words: Requested summary length
        prompt: Additional instructions for the summary
        transcript_only: Stop after transcription
        orchestrator: Services to use (defaults to the configured ones)

    Returns:
        Summary, or Transcript when transcript_only is set
    """
    orchestrator = orchestrator or create_orchestrator()
    options = SummaryOptions(max_words=max_words, additional_prompt=prompt, transcript_only=transcript_only)
    try:
        return await orchestrator.run(source_from_argument(target), options, progress=print_event)
    finally:
        await orchestrator.cleanup_all()


def main():
    """Main function to run the application from command line."""
    parser = argparse.ArgumentParser(description="Transcribe and summarize a video")
    parser.add_argument("target", help="Video URL or path of a local video file")
    parser.add_argument("--words", type=int, default=config.DEFAULT_SUMMARY_WORDS,
                        help="Summary length in words")
    parser.add_argument("--prompt", help="Additional instructions for the summary")
    parser.add_argument("--transcript-only", action="store_true",
                        help="Print the transcript instead of a summary")
    parser.add_argument("--output", help="Output JSON file for the result")

    args = parser.parse_args()

    # Load environment variables
    load_dotenv()

    try:
        result = asyncio.run(digest(args.target, args.words, args.prompt, args.transcript_only))
    except MediaDigestError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(1)

    if args.output:
        save_result(result, args.output)

    text = result.text if isinstance(result, Transcript) else result.content
    print("\n" + "=" * 80)
    print("Transcript" if isinstance(result, Transcript) else f"Summary ({result.metadata.word_count} words)")
    print("=" * 80)
    print(text)
    print("=" * 80)


if __name__ == "__main__":
    main()
