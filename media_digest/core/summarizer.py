"""
Module for summarizing transcripts using LLM models.
"""

import asyncio
import os
from typing import Optional

from langchain.chat_models import init_chat_model
from langchain_core.documents import Document
from langchain_core.prompts import ChatPromptTemplate
from langchain_text_splitters import RecursiveCharacterTextSplitter

from media_digest.config import config
from media_digest.models.schemas import Summary, SummaryConfig, SummaryMetadata, SummaryOptions, Transcript
from media_digest.utils.error_handling import ProcessingFailedError, ValidationError
from media_digest.utils.helpers import count_words
from media_digest.utils.logger import logging


SYSTEM_PROMPT = "You are a helpful assistant that will return a summary of the provided transcript."
SUMMARY_PROMPT = (
    "Return a summary of {word_count} words for the following transcript: {transcript}. "
    "{additional_prompt}"
)
PARTIAL_SUMMARY_PROMPT = "Summarize this part of a transcript, keeping every important point:\n\n{text}"


class TranscriptSummarizer:
    """Class to handle transcript summarization operations."""

    def __init__(self, api_key: Optional[str] = None, summary_config: Optional[SummaryConfig] = None):
        """
        Initialize the summarizer with API key.

        Args:
            api_key: Groq API key (if None, will try to get from environment)
            summary_config: Model and chunking settings
        """
        self.api_key = api_key or os.getenv("GROQ_API_KEY")
        if not self.api_key:
            raise ValueError("Groq API key is required. Set it in .env file or pass directly.")

        self.summary_config = summary_config or SummaryConfig()

    def summarize(self, transcript_text: str, max_words: int, additional_prompt: Optional[str] = None) -> str:
        """
        Summarize a transcript text.

        ``max_words`` is passed to the model as a target; the answer is not
        truncated to it.

        Args:
            transcript_text: Full transcript text to summarize
            max_words: Requested summary length in words
            additional_prompt: Optional steering text appended to the request

        Returns:
            Summarized text
        """
        cfg = self.summary_config

        # For longer transcripts, split into chunks
        text_splitter = RecursiveCharacterTextSplitter(
            chunk_size=cfg.chunk_size,
            chunk_overlap=cfg.chunk_overlap
        )
        docs = text_splitter.split_documents([Document(page_content=transcript_text)])

        llm = init_chat_model(
            model=cfg.model,
            model_provider="groq",
            temperature=cfg.temperature,
            max_tokens=cfg.max_tokens,
            api_key=self.api_key,
        )

        text = transcript_text
        if len(docs) > 1:
            # Map step: condense each chunk, then summarize the condensed parts
            logging.info(f"Transcript split into {len(docs)} chunks for summarization")
            partial_prompt = ChatPromptTemplate.from_messages([("human", PARTIAL_SUMMARY_PROMPT)])
            partials = []
            for doc in docs:
                response = llm.invoke(partial_prompt.format_messages(text=doc.page_content))
                partials.append(response.content)
            text = "\n\n".join(partials)

        summary_prompt = ChatPromptTemplate.from_messages([
            ("system", SYSTEM_PROMPT),
            ("human", SUMMARY_PROMPT),
        ])
        messages = summary_prompt.format_messages(
            word_count=max_words,
            transcript=text,
            additional_prompt=additional_prompt or "",
        )
        return llm.invoke(messages).content


class SummarizationStage:
    """Validates a transcript and turns it into a Summary."""

    def __init__(
        self,
        summarizer: TranscriptSummarizer,
        min_chars: int = config.MIN_TRANSCRIPT_CHARS,
        min_words: int = config.MIN_SUMMARY_WORDS,
        max_words: int = config.MAX_SUMMARY_WORDS,
    ):
        self.summarizer = summarizer
        self.min_chars = min_chars
        self.min_words = min_words
        self.max_words = max_words

    def validate_options(self, options: SummaryOptions) -> None:
        if not self.min_words <= options.max_words <= self.max_words:
            raise ValidationError(
                f"Word count must be between {self.min_words} and {self.max_words}",
                details={"max_words": options.max_words},
            )

    def validate(self, transcript_text: Optional[str], options: SummaryOptions) -> None:
        """Raise ValidationError before any external call when the input can't be summarized."""
        if not transcript_text or len(transcript_text.strip()) < self.min_chars:
            raise ValidationError(
                f"Transcript is too short to summarize (minimum {self.min_chars} characters)"
            )
        self.validate_options(options)

    async def summarize(
        self,
        transcript: Transcript,
        options: SummaryOptions,
        source_type: str,
        source_id: str,
    ) -> Summary:
        """
        Summarize a transcript.

        Args:
            transcript: Transcript to summarize
            options: Requested length and steering text
            source_type: "remote" or "file"
            source_id: URL or file name the transcript came from

        Returns:
            Summary with word count and compression ratio
        """
        self.validate(transcript.text, options)

        try:
            content = await asyncio.to_thread(
                self.summarizer.summarize,
                transcript.text,
                options.max_words,
                options.additional_prompt,
            )
        except Exception as e:
            logging.error(f"Summary generation failed: {str(e)}")
            raise ProcessingFailedError("Failed to generate summary", details={"reason": str(e)}) from e

        content = content.strip() if isinstance(content, str) else ""
        if not content:
            raise ProcessingFailedError("Summary generation returned no content")

        word_count = count_words(content)
        transcript_words = count_words(transcript.text)
        compression_ratio = round(word_count / transcript_words * 100, 2) if transcript_words else None
        logging.info(f"Summary ready: {word_count} words (requested {options.max_words})")

        return Summary(
            content=content,
            metadata=SummaryMetadata(
                word_count=word_count,
                source_type=source_type,
                source_id=source_id,
                compression_ratio=compression_ratio,
            ),
        )
