import asyncio

import pytest

from sanitizer.core.cancellation import CancelledException
from sanitizer.core.errors import CONTEXT_MESSAGE, TIMEOUT_MESSAGE, ErrorKind, SanitizerError
from sanitizer.core.models import ProviderSettings
from sanitizer.services.orchestrator import ChunkOrchestrator, compute_chunk_budget
from sanitizer.services.splitter import split_chunks


def overflow_first(text, attempt):
    if attempt == 1:
        raise RuntimeError("the request exceeds the available context size")
    return [text[0]]


def always_overflow(text, attempt):
    raise RuntimeError("context length exceeded")


def test_chunk_budget():
    assert compute_chunk_budget(2048, "") == 3072
    # Context below the floor is raised to 512 tokens
    assert compute_chunk_budget(100, "") == 768
    # A huge prompt still leaves the minimum content budget
    assert compute_chunk_budget(4096, "p" * 30000) == 768
    # Prompt estimate uses 3 chars per token, rounded up
    assert compute_chunk_budget(4096, "p" * 301) == (4096 - 101 - 1024) * 3


@pytest.mark.asyncio
async def test_short_text_single_call(session, fake_provider_cls, recorder):
    provider = fake_provider_cls()
    result = await ChunkOrchestrator().run(
        session, provider, "A short article.", "Sanitize.", recorder.on_status, recorder.on_update,
    )

    assert provider.calls == ["A short article."]
    assert result.content == "[A short article.]"
    assert "".join(recorder.deltas) == result.content
    assert recorder.messages == ["Connecting to LLM...", "Processing article..."]
    assert session.output == result.content


@pytest.mark.asyncio
async def test_long_text_processed_in_order_with_progress(session, fake_provider_cls, recorder):
    text = ("x" * 9 + " ") * 1000
    # 1334 content tokens -> 4002 chars per chunk
    provider = fake_provider_cls(ProviderSettings(context_length=1334 + 1024))
    result = await ChunkOrchestrator().run(
        session, provider, text, "", recorder.on_status, recorder.on_update,
    )

    expected = [c.text for c in split_chunks(text, 4002)]
    assert len(expected) > 1
    assert provider.calls == expected
    assert all(len(c) <= 4002 for c in provider.calls)
    assert result.content == "".join(f"[{c}]" for c in expected)
    assert "".join(recorder.deltas) == result.content

    n = len(expected)
    assert recorder.statuses[1] == (f"Processing {n} parts...", None)
    assert recorder.statuses[2:] == [(f"Part {i + 1} of {n}...", i / n) for i in range(n)]


@pytest.mark.asyncio
async def test_overflow_recovered_by_halving(session, fake_provider_cls, recorder):
    text = "A" * 1400 + " " + "B" * 1400
    provider = fake_provider_cls(respond=overflow_first)
    result = await ChunkOrchestrator().run(
        session, provider, text, "", recorder.on_status, recorder.on_update,
    )

    assert provider.calls == [text, "A" * 1400, "B" * 1400]
    assert result.content == "AB"
    assert recorder.deltas == ["A", "B"]
    assert not any(m.startswith("Error") for m in recorder.messages)


@pytest.mark.asyncio
async def test_overflow_retries_stop_at_max_depth(session, fake_provider_cls, recorder):
    provider = fake_provider_cls(respond=always_overflow)

    with pytest.raises(SanitizerError) as exc_info:
        await ChunkOrchestrator().run(
            session, provider, "A" * 2800, "", recorder.on_status, recorder.on_update,
        )

    assert [len(c) for c in provider.calls] == [2800, 1400, 700]
    assert exc_info.value.kind is ErrorKind.CONTEXT_OVERFLOW
    assert exc_info.value.message == CONTEXT_MESSAGE
    assert recorder.messages[-1] == f"Error: {CONTEXT_MESSAGE}"
    assert recorder.deltas == []


@pytest.mark.asyncio
async def test_other_errors_are_not_retried(session, fake_provider_cls):
    def boom(text, attempt):
        raise RuntimeError("model crashed")

    provider = fake_provider_cls(respond=boom)
    with pytest.raises(SanitizerError) as exc_info:
        await ChunkOrchestrator().run(session, provider, "text", "")

    assert len(provider.calls) == 1
    assert exc_info.value.kind is ErrorKind.GENERIC
    assert exc_info.value.message == "model crashed"


@pytest.mark.asyncio
async def test_overflow_after_partial_output_is_not_replayed(session, fake_provider_cls, recorder):
    def partial_then_overflow(text, attempt):
        def deltas():
            yield "partial"
            raise RuntimeError("context window exceeded")
        return deltas()

    provider = fake_provider_cls(respond=partial_then_overflow)
    with pytest.raises(SanitizerError):
        await ChunkOrchestrator().run(session, provider, "text", "", on_update=recorder.on_update)

    assert len(provider.calls) == 1
    assert recorder.deltas == ["partial"]


@pytest.mark.asyncio
async def test_blank_text_makes_no_backend_call(session, fake_provider_cls):
    provider = fake_provider_cls()
    result = await ChunkOrchestrator().run(session, provider, "   \n  ", "")

    assert provider.calls == []
    assert result.content == ""


@pytest.mark.asyncio
async def test_chunk_timeout(session, fake_provider_cls):
    provider = fake_provider_cls(delay=1)
    with pytest.raises(SanitizerError) as exc_info:
        await ChunkOrchestrator(chunk_timeout=0.05).run(session, provider, "slow", "")

    assert exc_info.value.kind is ErrorKind.TIMEOUT
    assert exc_info.value.message == TIMEOUT_MESSAGE


@pytest.mark.asyncio
async def test_cancelled_before_start(session, fake_provider_cls, recorder):
    session.token.cancel()
    provider = fake_provider_cls()

    with pytest.raises(CancelledException):
        await ChunkOrchestrator().run(session, provider, "text", "", recorder.on_status)

    assert provider.calls == []
    assert recorder.statuses == []


@pytest.mark.asyncio
async def test_cancel_mid_stream_stops_remaining_chunks(session, fake_provider_cls, recorder):
    text = "A" * 3000 + "\n\n" + "B" * 3000
    provider = fake_provider_cls(delay=0.01)

    def on_update(delta):
        recorder.on_update(delta)
        session.token.cancel()

    with pytest.raises(CancelledException):
        await ChunkOrchestrator().run(session, provider, text, "", recorder.on_status, on_update)

    assert provider.calls == ["A" * 3000]
    assert recorder.deltas == ["["]
    assert not any(m.startswith("Error") for m in recorder.messages)


@pytest.mark.asyncio
async def test_cancel_interrupts_stalled_call(session, fake_provider_cls):
    provider = fake_provider_cls(delay=10)
    task = asyncio.create_task(ChunkOrchestrator().run(session, provider, "text", ""))
    await asyncio.sleep(0.01)

    session.token.cancel()
    with pytest.raises(CancelledException):
        await asyncio.wait_for(task, 1)


@pytest.mark.asyncio
async def test_condense_streams_only_final_summary(session, fake_provider_cls, recorder):
    def summarize(text, attempt):
        return [f"S{len(text)}"]

    text = "A" * 3000 + "\n\n" + "B" * 3000
    provider = fake_provider_cls(respond=summarize)
    result = await ChunkOrchestrator().condense(
        session, provider, text, "", recorder.on_status, recorder.on_update,
    )

    assert provider.calls == ["A" * 3000, "B" * 3000, "S3000\nS3000"]
    assert result.content == "S11"
    assert recorder.deltas == ["S11"]
    assert session.output == "S11"
    assert "Summarizing part 1 of 2..." in recorder.messages
    assert recorder.messages[-1] == "Generating final summary..."


@pytest.mark.asyncio
async def test_condense_reduces_until_summaries_fit(session, fake_provider_cls, recorder):
    # Summaries as long as their input never shrink; the reduce loop is bounded
    def verbatim(text, attempt):
        return [text]

    text = "\n\n".join(ch * 3000 for ch in "ABC")
    provider = fake_provider_cls(respond=verbatim)
    result = await ChunkOrchestrator(max_condense_rounds=2).condense(
        session, provider, text, "", recorder.on_status, recorder.on_update,
    )

    assert recorder.messages.count("Reducing summaries further...") == 2
    assert "Re-summarizing part 1 of 3..." in recorder.messages
    assert result.content == "".join(recorder.deltas)


@pytest.mark.asyncio
async def test_overflow_split_makes_exactly_two_pieces(session, fake_provider_cls):
    provider = fake_provider_cls(respond=overflow_first)

    result = await ChunkOrchestrator().run(session, provider, "aaa bbb ccc", "")

    assert provider.calls == ["aaa bbb ccc", "aaa", "bbb ccc"]
    assert result.content == "ab"


@pytest.mark.asyncio
async def test_overflow_halves_word_text_once(session, fake_provider_cls):
    def overflow_if_long(text, attempt):
        if len(text) > 30:
            raise RuntimeError("context length exceeded")
        return [text]

    provider = fake_provider_cls(respond=overflow_if_long)
    text = " ".join(["word"] * 9)

    result = await ChunkOrchestrator().run(session, provider, text, "")

    # Cut at the space nearest the middle, separator dropped between halves
    assert provider.calls == [text, "word " * 4 + "word", "word " * 3 + "word"]
    assert result.content == "word " * 4 + "word" + "word " * 3 + "word"


@pytest.mark.asyncio
async def test_cancel_between_chunks_stops_before_next_part(session, fake_provider_cls, recorder):
    text = "\n\n".join(ch * 3000 for ch in "ABC")
    provider = fake_provider_cls()
    invoked = []
    original_call = provider.call

    def tracking_call(text, *args, **kwargs):
        invoked.append(text)
        return original_call(text, *args, **kwargs)

    provider.call = tracking_call

    def on_status(message, progress):
        recorder.on_status(message, progress)
        if message.startswith("Part 2 of"):
            session.token.cancel()

    with pytest.raises(CancelledException):
        await ChunkOrchestrator().run(session, provider, text, "", on_status, recorder.on_update)

    assert recorder.messages[-1] == "Part 2 of 3..."
    assert invoked == ["A" * 3000]
    assert provider.calls == ["A" * 3000]
    assert recorder.deltas == ["[", "A" * 3000, "]"]
