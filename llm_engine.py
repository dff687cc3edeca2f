"""LLM-backed ink authoring helpers.

Talks to any OpenAI-compatible chat endpoint: api.openai.com with
OPENAI_API_KEY, or a local LM Studio server via INKY_LLM_BASE_URL
(e.g. http://localhost:1234/v1).
"""

import os
import re
import sys
import time

import openai

DEFAULT_MODEL = "gpt-4o-mini"
LOCAL_API_KEY = "lm-studio"  # local servers accept any key

GENERATE_INK_PROMPT = """You are an expert ink (inkle's ink) script writer.
Generate valid ink syntax. Use knots (===), stitches (=), choices (*, +),
diverts (->), variables (VAR), conditionals, and other ink features.
Every branch must end in a divert or -> END.
Only output the ink code, no explanations."""

REVIEW_INK_PROMPT = """You are an expert ink (inkle's ink) script reviewer.
Analyze for: syntax errors, dead ends, missing diverts, unused knots, RTL/bidi issues.
Provide specific, actionable feedback."""

TRANSLATE_HEBREW_PROMPT = """You are a Hebrew translator for interactive fiction.
Translate only the story text to Hebrew. Keep all ink syntax (knots, stitches,
choices, diverts, variables, tags, logic) unchanged.
Preserve the ink structure exactly. Only output the translated ink code."""


class LlmEngine:
    def __init__(self, model: str | None = None, base_url: str | None = None,
                 api_key: str | None = None, max_tokens: int = 4096):
        self.model = model or os.environ.get("INKY_LLM_MODEL", DEFAULT_MODEL)
        self.base_url = base_url or os.environ.get("INKY_LLM_BASE_URL") or None
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY") or None
        self.max_tokens = max_tokens
        # Retry configuration, tuneable via environment variables.
        self._max_retries = int(os.environ.get("INKY_LLM_MAX_RETRIES", "3"))
        self._retry_base_delay = float(os.environ.get("INKY_LLM_RETRY_BASE_DELAY", "2.0"))
        self._last_usage = {"prompt_tokens": 0, "completion_tokens": 0}

    @classmethod
    def from_env(cls) -> "LlmEngine | None":
        """Build an engine when an API key or a local base URL is configured."""
        if not (os.environ.get("OPENAI_API_KEY") or os.environ.get("INKY_LLM_BASE_URL")):
            return None
        return cls()

    def _client(self) -> openai.OpenAI:
        if self.base_url:
            return openai.OpenAI(base_url=self.base_url, api_key=self.api_key or LOCAL_API_KEY)
        return openai.OpenAI(api_key=self.api_key)

    @staticmethod
    def _retry_after(e: openai.APIStatusError) -> float | None:
        response = getattr(e, "response", None)
        if response is None:
            return None
        value = response.headers.get("Retry-After")
        if not value:
            return None
        try:
            return float(value)
        except (ValueError, TypeError):
            return None

    def complete(self, instruction: str, data: str) -> str:
        """One chat completion: instruction as system message, data as user message.

        Rate-limit responses (429) are retried with exponential backoff,
        waiting at least as long as the server's Retry-After header asks.
        """
        client = self._client()
        messages = []
        if instruction:
            messages.append({"role": "system", "content": instruction})
        messages.append({"role": "user", "content": data or "(no data provided)"})

        for attempt in range(self._max_retries + 1):
            try:
                resp = client.chat.completions.create(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    messages=messages,
                )
            except openai.APIStatusError as e:
                if e.status_code != 429 or attempt >= self._max_retries:
                    raise
                delay = self._retry_base_delay * (2 ** attempt)
                retry_after = self._retry_after(e)
                if retry_after is not None:
                    delay = max(delay, retry_after)
                print(f"[inky-llm] Rate limited (attempt {attempt + 1}/{self._max_retries}), "
                      f"retrying in {delay:.1f}s...",
                      file=sys.stderr, flush=True)
                time.sleep(delay)
                continue
            if resp.usage is not None:
                self._last_usage = {
                    "prompt_tokens": resp.usage.prompt_tokens,
                    "completion_tokens": resp.usage.completion_tokens,
                }
            return resp.choices[0].message.content or ""
        raise RuntimeError("unreachable: retry loop exited without a result")

    @staticmethod
    def _extract_code(text: str) -> str:
        """Extract ink code from markdown fences if present."""
        match = re.search(r'```(?:ink)?\s*\n(.*?)```', text, re.DOTALL)
        return match.group(1).strip() if match else text.strip()

    def chat(self, message: str) -> str:
        return self.complete("", message)

    def generate_ink(self, prompt: str) -> str:
        return self._extract_code(self.complete(GENERATE_INK_PROMPT, f"User request: {prompt}"))

    def review_ink(self, source: str) -> str:
        return self.complete(REVIEW_INK_PROMPT, f"Ink code to review:\n{source}")

    def translate_to_hebrew(self, source: str) -> str:
        return self._extract_code(self.complete(TRANSLATE_HEBREW_PROMPT, f"Ink source:\n{source}"))

    def model_info(self) -> dict:
        return {
            "model": self.model,
            "base_url": self.base_url or "https://api.openai.com/v1",
            "provider": "openai-compatible" if self.base_url else "openai",
            "max_tokens": self.max_tokens,
            "last_usage": dict(self._last_usage),
        }
