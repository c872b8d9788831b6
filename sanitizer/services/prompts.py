"""Prompt composition for the sanitizer."""
from enum import Enum


DEFAULT_PROMPT = """Your response MUST have two clearly separated sections in this exact order.

First section: a manipulation warning.
Scan the headline and article for manipulative techniques: clickbait, emotional pressure, fear-mongering, false urgency, leading questions, loaded framing, unsubstantiated claims presented as facts.

If any are found, start your response with a short warning block:
- Name each technique detected and give a concrete example from the text.
- If the headline exaggerates, contradicts, or misrepresents the article body, say so directly.
- State the actual scale: real numbers vs. what is implied.

If the article is factual and neutral, start with a single line stating that no manipulative techniques were detected.

Second section: a neutral summary.
After the warning, provide a neutral summary:
- Verifiable facts, data, and attributed quotes only.
- Core argument and event structure.
- Proper context: comparisons, historical baselines, and proportionality.

Tone:
- Calm and neutral. Do not amplify anxiety, outrage, or helplessness.
- If the topic is distressing, briefly note what is within and outside the reader's control.
- Replace doom-framing with actionable perspective: what happened, who is affected, what (if anything) the reader can do.

Exclude:
- Emotional appeals and sensationalist framing.
- Unsubstantiated claims without attribution.
- Off-topic promotional content and SEO filler."""


FACT_CHECK_INSTRUCTION = """You have access to a web_search tool. Use it to:
- Verify key claims, statistics, and quotes mentioned in the article.
- Check if the described event actually happened and whether the scale matches reality.
- Look up context the article omits (e.g. base rates, historical precedent, official statements).

After verifying, clearly mark in your summary:
- [Verified]: facts confirmed by external sources.
- [Unverified]: claims you could not confirm.
- [Misleading]: claims that are technically true but presented in a deceptive way.
- [False]: claims directly contradicted by reliable sources.

Do not search for every sentence. Focus on the most consequential and suspicious claims."""


class Verbosity(str, Enum):
    """Summary detail levels."""
    SHORT = "short"
    MEDIUM = "medium"
    DETAILED = "detailed"


DEFAULT_VERBOSITY = Verbosity.MEDIUM

VERBOSITY_INSTRUCTIONS = {
    Verbosity.SHORT: "Provide a brief, concise summary with only the key facts. Keep it as short as possible.",
    Verbosity.MEDIUM: "Provide a balanced summary with the main facts and arguments at moderate length.",
    Verbosity.DETAILED: "Provide a comprehensive, detailed summary covering all important points, arguments, and evidence.",
}

# Response languages, keyed by ISO 639-1 code
LANGUAGE_NAMES = {
    "en": "English",
    "ru": "Русский",
    "uk": "Українська",
    "de": "Deutsch",
    "fr": "Français",
    "es": "Español",
    "it": "Italiano",
    "pt": "Português",
    "pl": "Polski",
    "zh": "中文",
    "ja": "日本語",
}


def parse_verbosity(value: str | None) -> Verbosity:
    """Unknown or empty values fall back to the default level."""
    try:
        return Verbosity(value)
    except ValueError:
        return DEFAULT_VERBOSITY


def get_verbosity_instruction(verbosity: str | None) -> str:
    return VERBOSITY_INSTRUCTIONS[parse_verbosity(verbosity)]


def get_language_instruction(code: str | None, browser_code: str = "") -> str:
    """
    Instruction to answer in a given language.

    Args:
        code: Language code (e.g. "en"); empty means use the browser language
        browser_code: Browser UI locale such as "de-AT"

    Returns:
        The instruction, or an empty string for unknown languages
    """
    lang = code or (browser_code.split("-")[0] if browser_code else "")
    name = LANGUAGE_NAMES.get(lang)
    if not name:
        return ""
    return f'IMPORTANT: You MUST respond in "{name}" language regardless of the article\'s language.'


def build_prompt(
    base_prompt: str | None = None,
    language: str | None = None,
    browser_language: str = "",
    verbosity: str | None = None,
    fact_check: bool = False,
) -> str:
    """Assemble the final system prompt, parts separated by blank lines."""
    parts = [
        get_language_instruction(language, browser_language),
        base_prompt or DEFAULT_PROMPT,
        get_verbosity_instruction(verbosity),
        FACT_CHECK_INSTRUCTION if fact_check else "",
    ]
    return "\n\n".join(p for p in parts if p)
