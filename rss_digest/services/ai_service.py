import asyncio
import logging
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiohttp
import yaml
from google import genai
from google.genai import types

from rss_digest.utils.config_loader import GenerationSettings
from rss_digest.utils.error_monitoring import GenerationTimeout
from rss_digest.utils.logging_config import log_ai_interaction


DEFAULT_PROMPTS_PATH = Path(__file__).resolve().parent.parent / "config" / "prompts.yaml"
DELETE_TIMEOUT_S = 5


class AIServiceError(Exception):
    pass


def load_prompts(path: Optional[Path] = None) -> Dict[str, Any]:
    """Load prompt templates from YAML."""
    prompts_path = Path(path) if path else DEFAULT_PROMPTS_PATH
    try:
        with open(prompts_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError as e:
        raise AIServiceError(f"Prompts file not found at {prompts_path}") from e
    except yaml.YAMLError as e:
        raise AIServiceError(f"Error parsing YAML at {prompts_path}: {e}") from e
    if not isinstance(data, dict):
        raise AIServiceError(f"Prompts file {prompts_path} must be a mapping")
    return data


def render_prompt(prompts: Dict[str, Any], prompt_key: str, context: Dict[str, Any],
                  extra_instructions: Optional[List[str]] = None) -> str:
    """Persona, the prompt's system block, any extra instructions, then the filled template."""
    cfg = prompts.get(prompt_key)
    if not isinstance(cfg, dict) or not cfg.get("template"):
        raise AIServiceError(f"Prompt '{prompt_key}' has no template")
    try:
        parts = [
            prompts.get("master_persona", "").format(**context),
            cfg.get("system", "").format(**context),
            *(extra_instructions or []),
            cfg["template"].format(**context),
        ]
    except (KeyError, IndexError, ValueError) as e:
        raise AIServiceError(f"Prompt '{prompt_key}' could not be rendered: {e}") from e
    return "\n\n".join(p.strip() for p in parts if p and p.strip())


def parse_model(model: str) -> Dict[str, str]:
    """``provider/model`` into OpenCode's model reference; bare names default to openai."""
    if "/" not in model:
        return {"providerID": "openai", "modelID": model}
    provider, _, rest = model.partition("/")
    return {"providerID": provider, "modelID": rest}


def extract_text_parts(payload: Any) -> str:
    """Join the text parts of an OpenCode message response."""
    if not isinstance(payload, dict):
        return ""
    data = payload.get("data", payload)
    if not isinstance(data, dict):
        return ""
    parts = data.get("parts")
    if parts is None and isinstance(data.get("info"), dict):
        parts = data["info"].get("parts")
    if not isinstance(parts, list):
        return ""

    segments: List[str] = []
    for part in parts:
        if not isinstance(part, dict):
            continue
        if isinstance(part.get("text"), str):
            segments.append(part["text"])
        elif isinstance(part.get("content"), str):
            segments.append(part["content"])
    return "\n".join(segments).strip()


class TextGenerationBackend(ABC):
    """Prompt in, free text out."""

    model: str = ""
    provider: str = "model"

    async def warmup(self) -> None:
        return None

    @abstractmethod
    async def complete(self, prompt: str, temperature: float) -> str:
        ...

    async def close(self) -> None:
        return None


class OpenCodeBackend(TextGenerationBackend):
    """
    Client for an OpenCode server's session API.

    Each completion creates a session, posts one prompt, collects the text
    parts of the reply and deletes the session.
    """

    provider = "opencode"

    def __init__(self, base_url: str, model: str, agent: Optional[str] = None,
                 session: Optional[aiohttp.ClientSession] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.agent = agent
        self._session = session
        self._owns_session = session is None
        self.logger = logging.getLogger(__name__)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def warmup(self) -> None:
        session = await self._get_session()
        try:
            async with session.get(f"{self.base_url}/config", timeout=aiohttp.ClientTimeout(total=10)) as response:
                if response.status >= 400:
                    raise AIServiceError(f"OpenCode server at {self.base_url} answered HTTP {response.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise AIServiceError(
                f"OpenCode server unreachable at {self.base_url}: {e}. "
                "Start it with 'opencode serve' or set OPENCODE_BASE_URL."
            ) from e

    async def complete(self, prompt: str, temperature: float) -> str:
        session = await self._get_session()
        async with session.post(
            f"{self.base_url}/session",
            json={"title": f"rss-digest-{int(time.time() * 1000)}"},
        ) as response:
            if response.status >= 400:
                raise AIServiceError(f"session create failed: HTTP {response.status}")
            created = await response.json(content_type=None)
        session_id = (created or {}).get("id") or ((created or {}).get("data") or {}).get("id")
        if not session_id:
            raise AIServiceError("session create returned no id")

        body: Dict[str, Any] = {
            "model": parse_model(self.model),
            "parts": [{"type": "text", "text": prompt}],
        }
        if self.agent:
            body["agent"] = self.agent

        try:
            async with session.post(f"{self.base_url}/session/{session_id}/message", json=body) as response:
                if response.status >= 400:
                    raise AIServiceError(f"prompt failed: HTTP {response.status}")
                payload = await response.json(content_type=None)
            return extract_text_parts(payload)
        finally:
            await self._delete_session(session, session_id)

    async def _delete_session(self, session: aiohttp.ClientSession, session_id: str) -> None:
        try:
            async with session.delete(
                f"{self.base_url}/session/{session_id}", timeout=aiohttp.ClientTimeout(total=DELETE_TIMEOUT_S)
            ) as response:
                if response.status >= 400:
                    self.logger.debug(f"session {session_id} delete: HTTP {response.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.debug(f"session {session_id} delete failed: {e}")

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()


class GeminiBackend(TextGenerationBackend):
    """Google GenAI client."""

    provider = "gemini"

    def __init__(self, api_key: str, model: str, max_output_tokens: int = 8192) -> None:
        if not api_key:
            raise ValueError("Gemini API key required. Set GEMINI_API_KEY.")
        self.client = genai.Client(api_key=api_key)
        self.model = model
        self.max_output_tokens = max_output_tokens

    async def complete(self, prompt: str, temperature: float) -> str:
        response = await self.client.aio.models.generate_content(
            model=self.model,
            contents=prompt,
            config=types.GenerateContentConfig(
                temperature=temperature,
                max_output_tokens=self.max_output_tokens,
            ),
        )
        try:
            return (response.text or "").strip()
        except ValueError:
            # response.text raises when the candidate has no text parts
            return ""


class TextGenerationService:
    """
    Timeout-bounded access to a text-generation backend.

    ``generate`` returns free text (possibly empty). Expiry raises
    GenerationTimeout; transport failures raise AIServiceError. Callers
    classify the text themselves.
    """

    def __init__(self, backend: TextGenerationBackend, timeout_s: float,
                 temperatures: Optional[Dict[str, float]] = None) -> None:
        self.backend = backend
        self.timeout_s = timeout_s
        self.temperatures = temperatures or {"summary": 0.4, "briefing": 0.6}
        self.logger = logging.getLogger(__name__)
        self._warm = False

    @property
    def model(self) -> str:
        return self.backend.model

    @property
    def provider(self) -> str:
        return self.backend.provider

    async def warmup(self) -> None:
        if self._warm:
            return
        await self.backend.warmup()
        self._warm = True
        self.logger.info(f"AI connection ready (model: {self.model})")

    async def generate(self, prompt: str, purpose: str = "summary", timeout_s: Optional[float] = None) -> str:
        timeout = timeout_s if timeout_s is not None else self.timeout_s
        started = time.perf_counter()
        try:
            text = await asyncio.wait_for(
                self.backend.complete(prompt, self.temperatures.get(purpose, 0.5)),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            elapsed = (time.perf_counter() - started) * 1000
            log_ai_interaction(self.logger, purpose, self.model, 0, elapsed, False, error="timeout")
            raise GenerationTimeout(f"{purpose} request timed out after {timeout:.1f}s") from e
        except aiohttp.ClientError as e:
            elapsed = (time.perf_counter() - started) * 1000
            log_ai_interaction(self.logger, purpose, self.model, 0, elapsed, False, error=str(e))
            raise AIServiceError(f"{purpose} request failed: {e}") from e

        text = text or ""
        elapsed = (time.perf_counter() - started) * 1000
        log_ai_interaction(self.logger, purpose, self.model, len(text), elapsed, bool(text))
        return text

    async def close(self) -> None:
        await self.backend.close()


def create_generation_service(settings: GenerationSettings) -> TextGenerationService:
    if settings.provider == "gemini":
        backend: TextGenerationBackend = GeminiBackend(settings.gemini_api_key or "", settings.model)
    else:
        backend = OpenCodeBackend(settings.base_url, settings.model, settings.agent)
    return TextGenerationService(backend, timeout_s=settings.timeout_seconds)
