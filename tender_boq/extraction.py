"""
extraction.py — The AI extraction adapter.

Feeds normalized tender text to a language model and gets a BOQExtraction
back, or fails with a classified AIExtractionError. Nothing the model
returns is trusted: the raw output goes through a tolerant JSON parse and
then strict pydantic validation against the same schema we put in the
prompt. A response that doesn't validate is a failure, not a partial
result.

Two model backends sit behind one tiny interface (`complete(prompt,
schema) -> str`): the hosted OpenAI chat API and a local llama.cpp model.
Either client is built once at startup and shared; neither keeps any
per-request state.

Failure classification is a heuristic. Upstream SDKs don't give us a
stable error taxonomy, so classify_ai_error() looks for substrings in the
exception text and type name, in a fixed order, and falls back to
"generic" when nothing matches. Treat the kind as a hint for the user,
never as something to branch business logic on.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from tender_boq.config import LLMConfig, config
from tender_boq.errors import AIExtractionError, AIFailureKind
from tender_boq.schemas import BOQExtraction, extraction_json_schema

logger = logging.getLogger(__name__)


# ── Prompt ────────────────────────────────────────────────────────────────
# The user-instructions block goes *before* the document text. Placed after
# it, the model tended to treat the instructions as part of the document.
# The double-brace {{}} is str.format escaping, not a typo.

SYSTEM_PROMPT = (
    "You are an expert construction estimator and quantity surveyor. "
    "You extract Bills of Quantities from tender documents and answer "
    "only with JSON that matches the given schema."
)

EXTRACTION_PROMPT = """Analyze the tender document below and extract its Bill of Quantities (BOQ).

Extract:
1. All work items with their item numbers
2. Detailed descriptions of each item
3. Quantities and units of measurement
4. Any rates or amounts mentioned
5. Categories or trades (civil, electrical, plumbing, etc.)
6. Project information (name, location) if available

RULES:
- Extract ONLY what the document contains. Do not invent items, rates or amounts.
- Quantities must be positive numbers. Leave unitRate and amount out if the document doesn't state them.
- Keep item numbers exactly as written (e.g. "1.2.3", "A-04").

Today's date: {date}

OUTPUT FORMAT (respond ONLY with valid JSON matching this schema, no markdown fences):
{schema}
{instructions}
TENDER DOCUMENT TEXT:
{text}
"""

INSTRUCTIONS_BLOCK = """
=== USER INSTRUCTIONS (follow these with higher priority than the general rules) ===
{instruction}
=== END USER INSTRUCTIONS ===
"""


def build_prompt(
    text: str,
    instruction: Optional[str] = None,
    today: Optional[date] = None,
) -> str:
    """Assemble the extraction prompt. The schema comes from BOQExtraction."""
    instructions = ""
    if instruction and instruction.strip():
        instructions = INSTRUCTIONS_BLOCK.format(instruction=instruction.strip())

    return EXTRACTION_PROMPT.format(
        date=(today or date.today()).isoformat(),
        schema=json.dumps(extraction_json_schema(), indent=2),
        instructions=instructions,
        text=text,
    )


# ── Model clients ─────────────────────────────────────────────────────────


class LLMClient:
    """Send a prompt, get raw text back. Implementations must be stateless."""

    name = "base"

    def complete(self, prompt: str, schema: Dict[str, Any]) -> str:
        raise NotImplementedError


class OpenAIClient(LLMClient):
    """
    Hosted chat completions with schema-constrained output.

    The SDK client is created on first use rather than in __init__: the
    SDK refuses to construct without an API key, and we'd rather start up
    and report a classified authentication error per request than crash
    the whole process on a missing env var.
    """

    name = "openai"

    def __init__(self, llm: Optional[LLMConfig] = None):
        self._llm = llm or config.llm
        self._sdk = None

    def _get_sdk(self):
        if self._sdk is None:
            from openai import OpenAI

            self._sdk = OpenAI(
                api_key=self._llm.api_key or None,
                base_url=self._llm.base_url or None,
                timeout=self._llm.timeout,
            )
        return self._sdk

    def complete(self, prompt: str, schema: Dict[str, Any]) -> str:
        response = self._get_sdk().chat.completions.create(
            model=self._llm.model,
            temperature=self._llm.temperature,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            response_format={
                "type": "json_schema",
                "json_schema": {"name": "boq_extraction", "schema": schema},
            },
        )
        message = response.choices[0].message
        if not message.content:
            refusal = getattr(message, "refusal", None)
            detail = "Model returned an empty response, nothing to parse"
            if refusal:
                detail += f" (refusal: {refusal})"
            raise ValueError(detail)
        logger.info(
            "OpenAI %s returned %d chars (finish_reason=%s)",
            self._llm.model, len(message.content), response.choices[0].finish_reason,
        )
        return message.content


class LlamaCppClient(LLMClient):
    """
    Local GGUF model via llama-cpp-python.

    Loading the model takes several seconds and a few GB of RAM, so it is
    loaded lazily on the first call and then kept. The loaded model is
    read-only as far as we're concerned; calls don't mutate client state.
    """

    name = "llama_cpp"

    def __init__(self, llm: Optional[LLMConfig] = None):
        self._llm = llm or config.llm
        self._model = None

    def _get_model(self):
        if self._model is not None:
            return self._model
        from llama_cpp import Llama

        logger.info("Loading LLM from: %s", self._llm.model_path)
        self._model = Llama(
            model_path=self._llm.model_path,
            n_ctx=self._llm.n_ctx,
            n_threads=self._llm.n_threads or None,
            verbose=False,
        )
        logger.info("LLM loaded successfully.")
        return self._model

    def complete(self, prompt: str, schema: Dict[str, Any]) -> str:
        response = self._get_model().create_chat_completion(
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            response_format={"type": "json_object", "schema": schema},
            temperature=self._llm.temperature,
            max_tokens=self._llm.max_tokens,
        )
        text = (response["choices"][0]["message"].get("content") or "").strip()
        logger.info("llama.cpp generated %d chars", len(text))
        return text


def create_client(llm: Optional[LLMConfig] = None) -> LLMClient:
    llm = llm or config.llm
    if llm.provider == "openai":
        return OpenAIClient(llm)
    if llm.provider == "llama_cpp":
        return LlamaCppClient(llm)
    raise ValueError(f"Unknown LLM provider: {llm.provider}")


# ── Response handling ─────────────────────────────────────────────────────


def parse_json_output(text: str) -> Optional[Dict[str, Any]]:
    """
    Multi-strategy JSON parser for LLM output.

    Even with schema-constrained decoding we see the occasional markdown
    fence or a sentence of preamble, especially from local models. Try, in
    order of strictness:
      1. Direct parse
      2. Strip markdown fences and retry
      3. Regex-extract the first {...} object
    and give up (None) if all three fail.
    """
    if not text:
        return None

    candidates = [text]
    cleaned = re.sub(r"```(?:json)?\s*", "", text).strip().rstrip("`")
    candidates.append(cleaned)
    match = re.search(r"\{[\s\S]*\}", cleaned)
    if match:
        candidates.append(match.group())

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def parse_response(raw: str) -> BOQExtraction:
    """Raw model text -> validated BOQExtraction, or a schema-kind failure."""
    parsed = parse_json_output(raw)
    if parsed is None:
        logger.error("Could not parse model output as JSON. First 500 chars: %s", (raw or "")[:500])
        raise AIExtractionError(
            AIFailureKind.SCHEMA, "The model response was not a JSON object"
        )

    try:
        return BOQExtraction.model_validate(parsed)
    except ValidationError as exc:
        errors = _summarize_validation_errors(exc)
        logger.error("Model output failed schema validation: %s", errors)
        raise AIExtractionError(
            AIFailureKind.SCHEMA,
            f"{exc.error_count()} schema violation(s) in the model response",
            extra={"errors": errors},
        ) from exc


def _summarize_validation_errors(exc: ValidationError) -> List[Dict[str, Any]]:
    return [
        {"loc": [str(part) for part in err["loc"]], "msg": err["msg"], "type": err["type"]}
        for err in exc.errors()
    ]


# ── Error classification ──────────────────────────────────────────────────
# Checked in this order; the first kind with a matching substring wins. An
# error mentioning both "connection" and "quota" is reported as rate_limit.

_CLASSIFICATION_RULES: List[Tuple[AIFailureKind, Tuple[str, ...]]] = [
    (AIFailureKind.AUTHENTICATION, (
        "authentication", "unauthorized", "api key", "api_key", "apikey",
        "invalid_api_key", "permission denied", "error code: 401", "status code 401",
    )),
    (AIFailureKind.RATE_LIMIT, (
        "rate limit", "rate_limit", "ratelimit", "quota", "too many requests",
        "error code: 429", "status code 429",
    )),
    (AIFailureKind.NETWORK, (
        "network", "timeout", "timed out", "connection", "econnrefused",
        "econnreset", "enotfound", "unreachable", "name resolution",
    )),
    (AIFailureKind.SCHEMA, (
        "schema", "parse", "json", "validation", "structured output",
    )),
]


def classify_ai_error(exc: BaseException) -> AIExtractionError:
    """
    Best-effort mapping of an upstream exception to an AIExtractionError.

    Already-classified errors pass through untouched. Everything else is
    matched on "<ExceptionType>: <message>", lowercased.
    """
    if isinstance(exc, AIExtractionError):
        return exc

    detail = str(exc) or exc.__class__.__name__
    haystack = f"{exc.__class__.__name__}: {detail}".lower()

    for kind, needles in _CLASSIFICATION_RULES:
        if any(needle in haystack for needle in needles):
            return AIExtractionError(kind, detail)
    return AIExtractionError(AIFailureKind.GENERIC, detail)


# ── Adapter ───────────────────────────────────────────────────────────────


class BOQExtractor:
    """
    Normalized text + optional instruction -> BOQExtraction.

    Usage:
        extractor = BOQExtractor(create_client())
        result = extractor.extract(text, instruction="Ignore the provisional sums sheet")

    No retries here. A failed call surfaces immediately with its
    classification; whether to try again is the caller's decision.
    """

    def __init__(self, client: Optional[LLMClient] = None):
        self.client = client or create_client()

    def extract(self, text: str, instruction: Optional[str] = None) -> BOQExtraction:
        prompt = build_prompt(text, instruction)
        logger.info(
            "Running BOQ extraction via %s (%d chars of text, instructions=%s)",
            self.client.name, len(text), bool(instruction),
        )

        try:
            raw = self.client.complete(prompt, extraction_json_schema())
        except Exception as exc:
            error = classify_ai_error(exc)
            logger.error(
                "BOQ extraction failed (%s): %s", error.kind.value, exc,
            )
            raise error from exc

        extraction = parse_response(raw)
        logger.info("Extracted %d BOQ items", len(extraction.items))
        return extraction
