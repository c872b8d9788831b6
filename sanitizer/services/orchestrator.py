"""Chunk orchestration: split, stream sequentially, recover from overflow."""
import logging
import math
from typing import Optional

from sanitizer.core.cancellation import (
    CancelledException,
    ProcessingPhase,
    race_with_token,
    with_timeout,
)
from sanitizer.core.config import config
from sanitizer.core.errors import is_context_error, normalize_error
from sanitizer.core.models import CallResult, Chunk, StatusCallback, UpdateCallback
from sanitizer.core.sessions import Session
from sanitizer.services.providers.base import Provider
from sanitizer.services.splitter import split_chunks, split_in_half

logger = logging.getLogger(__name__)

CHUNK_TIMEOUT_MESSAGE = "Request timed out. Server may be overloaded or the model is too slow."
CONDENSE_SEPARATOR = "\n"


def compute_chunk_budget(context_length: int, prompt: str) -> int:
    """
    Character budget for one chunk.

    The context is floored at ``min_context_tokens``; the prompt estimate
    plus the response buffer is reserved, leaving at least
    ``min_content_tokens`` for content.
    """
    ctx = max(config.min_context_tokens, context_length)
    prompt_tokens = math.ceil(len(prompt or "") / config.chars_per_token)
    reserve = min(
        ctx - config.min_content_tokens,
        prompt_tokens + config.response_buffer_tokens,
    )
    max_chunk_tokens = max(config.min_content_tokens, ctx - reserve)
    return max_chunk_tokens * config.chars_per_token


class ChunkOrchestrator:
    """
    Drives one long text through one provider.

    Pipeline:
    1. Budget: provider context length minus prompt and response reserve
    2. Split: recursive splitter with that budget
    3. Stream: chunks strictly in order, deltas forwarded immediately
    4. Recover: overflow-classified failures re-split in halves, depth-bounded

    Cancellation is checked before and between chunks and raced against
    every provider call; it propagates as ``CancelledException``.
    """

    def __init__(
        self,
        chunk_timeout: Optional[float] = config.chunk_timeout,
        max_retry_depth: int = config.max_retry_depth,
        max_condense_rounds: int = config.max_condense_rounds,
    ):
        self._chunk_timeout = chunk_timeout
        self._max_retry_depth = max_retry_depth
        self._max_condense_rounds = max_condense_rounds

    async def plan(self, session: Session, provider: Provider, text: str, prompt: str) -> tuple[int, list[Chunk]]:
        """
        Resolve the budget and split the text.

        Returns:
            Tuple of (max_chunk_chars, chunks)
        """
        session.token.set_phase(ProcessingPhase.CONNECTING)
        context_length = await race_with_token(provider.resolve_context_length(), session.token)

        session.token.set_phase(ProcessingPhase.SPLITTING)
        max_chunk_chars = compute_chunk_budget(context_length, prompt)
        chunks = split_chunks(text, max_chunk_chars)
        logger.info(
            "Split text (%d chars) into %d chunk(s) (context: %d tokens, maxChars: %d)",
            len(text), len(chunks), context_length, max_chunk_chars,
        )
        return max_chunk_chars, chunks

    async def run(
        self,
        session: Session,
        provider: Provider,
        text: str,
        prompt: str,
        on_status: Optional[StatusCallback] = None,
        on_update: Optional[UpdateCallback] = None,
    ) -> CallResult:
        """
        Stream every chunk through ``provider`` and aggregate the output.

        Raises:
            CancelledException: Session cancelled (not a failure)
            SanitizerError: Normalized terminal failure; no partial result
        """
        token = session.token
        token.check_cancelled()
        if on_status:
            on_status("Connecting to LLM...", None)

        try:
            _, chunks = await self.plan(session, provider, text, prompt)

            if on_status:
                on_status(
                    f"Processing {len(chunks)} parts..." if len(chunks) > 1 else "Processing article...",
                    None,
                )

            full_text = ""
            for i, chunk in enumerate(chunks):
                token.check_cancelled()
                if len(chunks) > 1 and on_status:
                    on_status(f"Part {i + 1} of {len(chunks)}...", i / len(chunks))

                full_text += await self._process_chunk(
                    session, provider, chunk.text, prompt, on_update, depth=0, path=(i,),
                )
        except CancelledException:
            raise
        except Exception as e:
            error = normalize_error(e)
            logger.warning("Session %s failed: %s", session.session_id, error.message)
            if on_status:
                on_status(f"Error: {error.message}", None)
            raise error from e

        session.retry_path = ()
        return CallResult(content=full_text)

    async def _call_once(
        self,
        session: Session,
        provider: Provider,
        text: str,
        prompt: str,
        on_update: Optional[UpdateCallback],
        emitted: list[str],
    ) -> str:
        token = session.token

        def forward(delta: str) -> None:
            emitted.append(delta)
            session.append_output(delta)
            if on_update:
                on_update(delta)

        token.check_cancelled()
        token.set_phase(ProcessingPhase.GENERATION)
        result = await race_with_token(
            with_timeout(
                provider.call(text, prompt, on_update=forward, token=token),
                self._chunk_timeout,
                CHUNK_TIMEOUT_MESSAGE,
            ),
            token,
        )
        return result.content

    async def _process_chunk(
        self,
        session: Session,
        provider: Provider,
        text: str,
        prompt: str,
        on_update: Optional[UpdateCallback],
        depth: int,
        path: tuple[int, ...],
    ) -> str:
        """Process one chunk, re-splitting in halves on context overflow."""
        if not text.strip():
            return ""

        session.retry_path = path
        emitted: list[str] = []
        try:
            return await self._call_once(session, provider, text, prompt, on_update, emitted)
        except CancelledException:
            raise
        except Exception as e:
            # A partially streamed attempt cannot be replayed without duplicating output
            if emitted or depth >= self._max_retry_depth or not is_context_error(e):
                raise

        session.token.set_phase(ProcessingPhase.RECOVERY)
        halves = split_in_half(text)
        logger.info(
            "Context overflow detected, re-splitting chunk %s (depth %d, %s chars)",
            path, depth + 1, "+".join(str(len(h)) for h in halves),
        )

        full_text = ""
        for j, sub in enumerate(halves):
            session.token.check_cancelled()
            full_text += await self._process_chunk(
                session, provider, sub.text, prompt, on_update, depth + 1, path + (j,),
            )
        return full_text

    async def condense(
        self,
        session: Session,
        provider: Provider,
        text: str,
        prompt: str,
        on_status: Optional[StatusCallback] = None,
        on_update: Optional[UpdateCallback] = None,
    ) -> CallResult:
        """
        Map-reduce strategy for summarizing backends.

        Each chunk is summarized silently, summaries are re-summarized until
        they fit one chunk, and only the final pass streams deltas.
        """
        token = session.token
        token.check_cancelled()
        if on_status:
            on_status("Connecting to LLM...", None)

        try:
            max_chunk_chars, chunks = await self.plan(session, provider, text, prompt)

            if len(chunks) > 1:
                summaries = await self._summarize_all(
                    session, provider, [c.text for c in chunks], prompt, on_status, "Summarizing",
                )
                text = await self._reduce(session, provider, summaries, prompt, max_chunk_chars, on_status)

            token.check_cancelled()
            if on_status:
                on_status("Generating final summary...", None)
            content = await self._process_chunk(
                session, provider, text, prompt, on_update, depth=0, path=(0,),
            )
        except CancelledException:
            raise
        except Exception as e:
            error = normalize_error(e)
            logger.warning("Session %s failed: %s", session.session_id, error.message)
            if on_status:
                on_status(f"Error: {error.message}", None)
            raise error from e

        session.retry_path = ()
        return CallResult(content=content)

    async def _summarize_all(
        self,
        session: Session,
        provider: Provider,
        texts: list[str],
        prompt: str,
        on_status: Optional[StatusCallback],
        verb: str,
    ) -> list[str]:
        summaries = []
        for i, piece in enumerate(texts):
            session.token.check_cancelled()
            if on_status:
                on_status(f"{verb} part {i + 1} of {len(texts)}...", i / len(texts))
            summaries.append(
                await self._silent_chunk(session, provider, piece, prompt, path=(i,))
            )
        return summaries

    async def _silent_chunk(
        self,
        session: Session,
        provider: Provider,
        text: str,
        prompt: str,
        path: tuple[int, ...],
    ) -> str:
        """Process a chunk without forwarding deltas or touching session output."""
        output_before = session.output
        try:
            return await self._process_chunk(session, provider, text, prompt, None, depth=0, path=path)
        finally:
            session.output = output_before

    async def _reduce(
        self,
        session: Session,
        provider: Provider,
        summaries: list[str],
        prompt: str,
        max_chars: int,
        on_status: Optional[StatusCallback],
    ) -> str:
        """Re-summarize until the combined summaries fit in one chunk."""
        combined = CONDENSE_SEPARATOR.join(summaries)
        rounds = 0
        while len(combined) > max_chars and rounds < self._max_condense_rounds:
            session.token.check_cancelled()
            session.token.set_phase(ProcessingPhase.CONDENSING)
            if on_status:
                on_status("Reducing summaries further...", None)
            pieces = [c.text for c in split_chunks(combined, max_chars)]
            summaries = await self._summarize_all(
                session, provider, pieces, prompt, on_status, "Re-summarizing",
            )
            combined = CONDENSE_SEPARATOR.join(summaries)
            rounds += 1

        if len(combined) > max_chars:
            logger.warning("Summaries still exceed %d chars after %d rounds", max_chars, rounds)
        return combined
