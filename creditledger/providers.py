"""
Paid actions: the provider calls that follow a successful charge.

Each provider is one ``PaidAction`` that knows its price, its credit class
and how to call the upstream API. The charge engine only sees the protocol;
which action runs is picked by tag from a ``ProviderRegistry``.
"""

import base64
import logging
import math
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol, Union

import httpx

from .clock import Clock, SystemClock
from .config import Settings
from .errors import ProviderFailure, UnsupportedProvider
from .models import AiProcessRequest, CreditClass, ProviderResult, TtsRequest

log = logging.getLogger(__name__)

PaidRequest = Union[TtsRequest, AiProcessRequest]

OPENAI_SPEECH_URL = "https://api.openai.com/v1/audio/speech"
OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"
GOOGLE_TTS_URL = "https://texttospeech.googleapis.com/v1/text:synthesize"
GEMINI_GENERATE_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
ELEVENLABS_TTS_URL = "https://api.elevenlabs.io/v1/text-to-speech/{voice}"
ELEVENLABS_VOICES_URL = "https://api.elevenlabs.io/v1/voices"


class PaidAction(Protocol):
    name: str
    credit_class: CreditClass

    def cost(self, request: PaidRequest) -> int:
        ...

    def execute(self, request: PaidRequest) -> ProviderResult:
        ...


class _HttpAction:
    name = "http"
    credit_class = CreditClass.BASIS

    def __init__(self, client: httpx.Client, api_key: str = ""):
        self.client = client
        self.api_key = api_key

    def _require_key(self) -> str:
        if not self.api_key:
            raise ProviderFailure(f"{self.name} API key not configured", provider=self.name)
        return self.api_key

    def _post(self, url: str, **kwargs) -> httpx.Response:
        try:
            response = self.client.post(url, **kwargs)
        except httpx.TimeoutException as exc:
            raise ProviderFailure(f"{self.name} request timed out", provider=self.name) from exc
        except httpx.HTTPError as exc:
            raise ProviderFailure(f"{self.name} request failed: {exc}", provider=self.name) from exc
        if not response.is_success:
            log.warning(
                "provider.upstream_error",
                extra={"provider": self.name, "status": response.status_code, "body": response.text[:500]},
            )
            raise ProviderFailure(
                f"{self.name} request failed: {response.status_code}",
                provider=self.name,
                status_code=response.status_code,
            )
        return response


class _TtsAction(_HttpAction):
    def cost(self, request: TtsRequest) -> int:
        return len(request.text)


class _TextAction(_HttpAction):
    def cost(self, request: AiProcessRequest) -> int:
        return math.ceil(len(request.text) / 10)


class OpenAITts(_TtsAction):
    name = "openai"

    def __init__(self, client: httpx.Client, api_key: str = "", model: str = "gpt-4o-mini-tts"):
        super().__init__(client, api_key)
        self.model = model

    def execute(self, request: TtsRequest) -> ProviderResult:
        key = self._require_key()
        response = self._post(
            OPENAI_SPEECH_URL,
            headers={"Authorization": f"Bearer {key}", "Accept": "audio/mpeg"},
            json={"model": self.model, "voice": request.voice_id or "alloy", "input": request.text},
        )
        return ProviderResult(
            provider=self.name,
            content_type=response.headers.get("content-type", "audio/mpeg"),
            audio=response.content,
        )


class GoogleTts(_TtsAction):
    name = "gemini"

    def __init__(self, client: httpx.Client, api_key: str = "", language_code: str = "de-DE"):
        super().__init__(client, api_key)
        self.language_code = language_code

    def execute(self, request: TtsRequest) -> ProviderResult:
        key = self._require_key()
        voice = {"languageCode": self.language_code}
        if request.voice_id:
            voice["name"] = request.voice_id
        response = self._post(
            GOOGLE_TTS_URL,
            params={"key": key},
            json={"input": {"text": request.text}, "voice": voice, "audioConfig": {"audioEncoding": "MP3"}},
        )
        audio_content = (response.json() or {}).get("audioContent")
        if not audio_content:
            raise ProviderFailure("gemini returned no audio", provider=self.name)
        return ProviderResult(provider=self.name, content_type="audio/mpeg", audio=base64.b64decode(audio_content))


class PollyTts(_TtsAction):
    """AWS Polly through the external signer service."""

    name = "polly"

    def __init__(self, client: httpx.Client, signer_url: str = "", signer_token: str = ""):
        super().__init__(client)
        self.signer_url = signer_url
        self.signer_token = signer_token

    def execute(self, request: TtsRequest) -> ProviderResult:
        if not self.signer_url:
            raise ProviderFailure("polly signer URL not configured", provider=self.name)
        headers = {}
        if self.signer_token:
            headers["x-worker-auth"] = self.signer_token
        response = self._post(self.signer_url, headers=headers, json={"text": request.text, "voiceId": request.voice_id})
        return ProviderResult(
            provider=self.name,
            content_type=response.headers.get("content-type", "audio/mpeg"),
            audio=response.content,
        )


class ElevenLabsTts(_TtsAction):
    name = "elevenlabs"
    credit_class = CreditClass.PREMIUM

    def execute(self, request: TtsRequest) -> ProviderResult:
        key = self._require_key()
        voice = request.voice_id or ""
        if voice.startswith("elevenlabs:"):
            voice = voice.split(":", 1)[1]
        if not voice:
            raise ProviderFailure("elevenlabs needs a voice id", provider=self.name)
        response = self._post(
            ELEVENLABS_TTS_URL.format(voice=voice),
            headers={"xi-api-key": key, "Accept": "audio/mpeg"},
            json={"text": request.text, "voice_settings": {"stability": 0.5, "similarity_boost": 0.75}},
        )
        return ProviderResult(
            provider=self.name,
            content_type=response.headers.get("content-type", "audio/mpeg"),
            audio=response.content,
        )

    def list_voices(self) -> list[dict]:
        key = self._require_key()
        try:
            response = self.client.get(ELEVENLABS_VOICES_URL, headers={"xi-api-key": key, "Accept": "application/json"})
        except httpx.HTTPError as exc:
            raise ProviderFailure(f"elevenlabs voice listing failed: {exc}", provider=self.name) from exc
        if not response.is_success:
            raise ProviderFailure(
                f"elevenlabs voice listing failed: {response.status_code}",
                provider=self.name,
                status_code=response.status_code,
            )
        voices = []
        for v in response.json().get("voices", []):
            voice_id = v.get("voice_id") or v.get("id")
            voices.append({
                "id": f"elevenlabs:{voice_id}",
                "provider": self.name,
                "name": v.get("name") or f"voice-{voice_id}",
                "locale": v.get("language") or v.get("locale"),
                "gender": (v.get("labels") or {}).get("gender") or v.get("gender"),
                "description": v.get("description"),
                "sampleUrl": v.get("preview_url"),
            })
        return voices


class OpenAIChat(_TextAction):
    name = "openai"

    def __init__(self, client: httpx.Client, api_key: str = "", model: str = "gpt-3.5-turbo"):
        super().__init__(client, api_key)
        self.model = model

    def execute(self, request: AiProcessRequest) -> ProviderResult:
        key = self._require_key()
        response = self._post(
            OPENAI_CHAT_URL,
            headers={"Authorization": f"Bearer {key}"},
            json={
                "model": self.model,
                "messages": [
                    {"role": "system", "content": request.prompt},
                    {"role": "user", "content": request.text},
                ],
                "max_tokens": max(100, math.ceil(len(request.text) / 2)),
                "temperature": 0.7,
            },
        )
        data = response.json() or {}
        text = ""
        choices = data.get("choices") or []
        if choices:
            text = (choices[0].get("message") or {}).get("content") or choices[0].get("text") or ""
        return ProviderResult(provider=self.name, text=text or "[OpenAI] (empty response)")


class GeminiText(_TextAction):
    name = "gemini"

    def __init__(self, client: httpx.Client, api_key: str = "", model: str = "gemini-2.5-flash"):
        super().__init__(client, api_key)
        self.model = model

    def execute(self, request: AiProcessRequest) -> ProviderResult:
        key = self._require_key()
        response = self._post(
            GEMINI_GENERATE_URL.format(model=self.model),
            params={"key": key},
            json={
                "contents": [{
                    "role": "user",
                    "parts": [{"text": f"Task: {request.prompt}\nText to process: \"{request.text}\""}],
                }],
                "generationConfig": {"temperature": 0.7},
            },
        )
        data = response.json() or {}
        try:
            text = data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderFailure("gemini returned no candidates", provider=self.name) from exc
        return ProviderResult(provider=self.name, text=text)


class UnsupportedAction:
    """Stands in for an unknown tag so the charge is refunded like any other failure."""

    credit_class = CreditClass.BASIS

    def __init__(self, name: str, kind: str):
        self.name = name
        self.kind = kind

    def cost(self, request: PaidRequest) -> int:
        if self.kind == "ai":
            return math.ceil(len(request.text) / 10)
        return len(request.text)

    def execute(self, request: PaidRequest) -> ProviderResult:
        raise UnsupportedProvider(f"Unsupported {self.kind} provider: {self.name}", provider=self.name)


class ProviderRegistry:
    def __init__(self, tts: dict[str, PaidAction], ai: dict[str, PaidAction]):
        self._tts = tts
        self._ai = ai

    def tts(self, tag: str) -> PaidAction:
        tag = (tag or "").lower()
        return self._tts.get(tag) or UnsupportedAction(tag, "tts")

    def ai(self, tag: str) -> PaidAction:
        tag = (tag or "").lower()
        return self._ai.get(tag) or UnsupportedAction(tag, "ai")


def build_registry(settings: Settings, client: Optional[httpx.Client] = None) -> ProviderRegistry:
    client = client or httpx.Client(timeout=settings.PROVIDER_TIMEOUT_SECONDS)
    polly = PollyTts(client, settings.POLLY_SIGNER_URL, settings.POLLY_SIGNER_TOKEN)
    return ProviderRegistry(
        tts={
            "openai": OpenAITts(client, settings.OPENAI_API_KEY, settings.OPENAI_TTS_MODEL),
            "gemini": GoogleTts(client, settings.GEMINI_API_KEY, settings.GEMINI_TTS_LANGUAGE),
            "polly": polly,
            "aws": polly,
            "elevenlabs": ElevenLabsTts(client, settings.ELEVENLABS_API_KEY),
        },
        ai={
            "openai": OpenAIChat(client, settings.OPENAI_API_KEY, settings.OPENAI_CHAT_MODEL),
            "gemini": GeminiText(client, settings.GEMINI_API_KEY, settings.GEMINI_TEXT_MODEL),
        },
    )


class VoiceCatalog:
    """Per-provider voice lists, each kept for ``ttl_seconds``."""

    def __init__(
        self,
        listers: dict[str, Callable[[], list[dict]]],
        ttl_seconds: int = 3600,
        clock: Optional[Clock] = None,
    ):
        self.listers = listers
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock or SystemClock()
        self._cache: dict[str, tuple[datetime, list[dict]]] = {}
        self._lock = threading.Lock()

    def voices(self, provider: str) -> list[dict]:
        provider = (provider or "").lower()
        lister = self.listers.get(provider)
        if lister is None:
            raise UnsupportedProvider(f"No voice catalog for provider: {provider}", provider=provider)

        now = self.clock.now()
        with self._lock:
            cached = self._cache.get(provider)
            if cached and now - cached[0] < self.ttl:
                return cached[1]

        voices = lister()
        with self._lock:
            self._cache[provider] = (now, voices)
        log.info("provider.voices.refreshed", extra={"provider": provider, "count": len(voices)})
        return voices

    def invalidate(self, provider: Optional[str] = None) -> None:
        with self._lock:
            if provider is None:
                self._cache.clear()
            else:
                self._cache.pop(provider.lower(), None)


def build_voice_catalog(registry: ProviderRegistry, settings: Settings, clock: Optional[Clock] = None) -> VoiceCatalog:
    elevenlabs = registry.tts("elevenlabs")
    listers = {}
    if isinstance(elevenlabs, ElevenLabsTts):
        listers["elevenlabs"] = elevenlabs.list_voices
    return VoiceCatalog(listers, ttl_seconds=settings.VOICE_CATALOG_TTL_SECONDS, clock=clock)
