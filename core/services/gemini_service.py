import json
import re
import asyncio
import hashlib
import time
import logging
import aiohttp
from typing import Any, Dict, List, Optional

from config import settings
from core.services.rate_limiter import CompletionRateLimiter, completion_rate_limiter

logger = logging.getLogger(__name__)


class GeminiServiceError(Exception):
    """Completion or embedding call failed"""


class RateLimitExceededError(GeminiServiceError):
    """No permit available, or the service answered 429"""


class CompletionTimeoutError(GeminiServiceError):
    """The call did not finish within the configured timeout"""


class MalformedResponseError(GeminiServiceError):
    """The service answered but the payload could not be used"""


class GeminiService:
    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None,
                 rate_limiter: Optional[CompletionRateLimiter] = None):
        # Direct REST API configuration
        self.api_key = api_key if api_key is not None else settings.GEMINI_API_KEY
        self.model = model or settings.GEMINI_MODEL
        self.base_url = settings.GEMINI_BASE_URL
        self.rate_limiter = rate_limiter or completion_rate_limiter

        self._cache = {}  # Simple in-memory cache
        self._cache_ttl = 300  # 5 minutes cache TTL
        self._max_cache_entries = 100
        self._request_timeout = settings.COMPLETION_TIMEOUT_SECONDS

    @property
    def is_available(self) -> bool:
        return bool(self.api_key)

    def _get_cache_key(self, prompt: str, max_tokens: int) -> str:
        """Generate cache key for prompt"""
        content = f"{prompt}:{max_tokens}"
        return hashlib.md5(content.encode()).hexdigest()

    def _is_cache_valid(self, timestamp: float) -> bool:
        """Check if cache entry is still valid"""
        return time.time() - timestamp < self._cache_ttl

    async def complete(self, prompt: str, max_tokens: int = 1000, temperature: float = 0.1) -> str:
        """
        Generate text with the configured Gemini model.

        Every call takes a permit from the shared rate limiter first. Failures
        are raised, never converted to apology text, so callers can choose
        their own fallback.

        Raises:
            GeminiServiceError: no API key, HTTP error or empty candidate list
            RateLimitExceededError: permit denied or HTTP 429
            CompletionTimeoutError: request exceeded the configured timeout
        """
        if not self.is_available:
            raise GeminiServiceError("Gemini API key not configured")

        cache_key = self._get_cache_key(prompt, max_tokens)
        if cache_key in self._cache:
            cached_data, timestamp = self._cache[cache_key]
            if self._is_cache_valid(timestamp):
                return cached_data
            del self._cache[cache_key]

        if not self.rate_limiter.try_acquire():
            raise RateLimitExceededError("No completion permit available")

        payload = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {
                "maxOutputTokens": max_tokens,
                "temperature": temperature,
            },
        }

        try:
            async with aiohttp.ClientSession() as session:
                url = f"{self.base_url}/models/{self.model}:generateContent?key={self.api_key}"
                async with session.post(
                    url,
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=self._request_timeout),
                    headers={"Content-Type": "application/json"}
                ) as response:
                    if response.status == 429:
                        self.rate_limiter.report_rate_limited()
                        raise RateLimitExceededError("Gemini API quota exceeded (429)")
                    if response.status != 200:
                        error_text = await response.text()
                        raise GeminiServiceError(f"Gemini API error {response.status}: {error_text[:200]}")
                    try:
                        data = await response.json()
                    except ValueError as e:
                        raise MalformedResponseError(f"Gemini response body was not JSON: {e}") from e
        except asyncio.TimeoutError as e:
            raise CompletionTimeoutError(f"Gemini API timeout after {self._request_timeout}s") from e
        except aiohttp.ClientError as e:
            raise GeminiServiceError(f"Gemini API connection error: {e}") from e

        self.rate_limiter.report_success()
        result = self._extract_text(data)

        self._cache[cache_key] = (result, time.time())
        if len(self._cache) > self._max_cache_entries:
            # Remove oldest entries
            oldest_keys = sorted(self._cache.keys(), key=lambda k: self._cache[k][1])[:20]
            for key in oldest_keys:
                del self._cache[key]

        return result

    def _extract_text(self, data: Dict[str, Any]) -> str:
        """First candidate text; any unexpected shape is a MalformedResponseError"""
        try:
            candidates = data.get("candidates") or []
            if candidates:
                parts = candidates[0].get("content", {}).get("parts") or []
                if parts and parts[0].get("text"):
                    return str(parts[0]["text"])
        except (AttributeError, TypeError, KeyError, IndexError) as e:
            raise MalformedResponseError(f"Unexpected Gemini response shape: {e}") from e
        logger.warning(f"No valid content in Gemini response: {str(data)[:200]}")
        raise MalformedResponseError("Gemini response contained no text")

    async def generate_embeddings(self, texts: List[str], task_type: str = "RETRIEVAL_QUERY") -> List[List[float]]:
        """Generate embeddings via the text-embedding REST endpoint"""
        if not self.is_available:
            raise GeminiServiceError("Gemini API key not configured")

        embeddings = []
        model = settings.EMBEDDING_MODEL
        try:
            async with aiohttp.ClientSession() as session:
                for text in texts:
                    url = f"{self.base_url}/models/{model}:embedContent?key={self.api_key}"
                    payload = {
                        "model": f"models/{model}",
                        "content": {"parts": [{"text": text}]},
                        "taskType": task_type
                    }
                    async with session.post(
                        url,
                        json=payload,
                        timeout=aiohttp.ClientTimeout(total=30),
                        headers={"Content-Type": "application/json"}
                    ) as response:
                        if response.status != 200:
                            raise GeminiServiceError(f"Embedding API error {response.status}")
                        try:
                            data = await response.json()
                            values = data.get("embedding", {}).get("values")
                        except (ValueError, AttributeError, TypeError) as e:
                            raise MalformedResponseError(f"Unexpected embedding response: {e}") from e
                        if not values:
                            raise MalformedResponseError("Embedding response had no values")
                        embeddings.append(values)
        except asyncio.TimeoutError as e:
            raise CompletionTimeoutError("Embedding API timeout") from e
        except aiohttp.ClientError as e:
            raise GeminiServiceError(f"Embedding API connection error: {e}") from e

        return embeddings

    def extract_json(self, text: str) -> Dict[str, Any]:
        """
        Pull a JSON object out of model output.

        Tolerates markdown fences and prose around the object. Tries a direct
        parse, then the first balanced {...} block, then a repaired version of
        that block.

        Raises:
            MalformedResponseError: when no JSON object can be recovered
        """
        if not text or not text.strip():
            raise MalformedResponseError("Empty response from Gemini")

        cleaned = text.strip()
        if cleaned.startswith('```json'):
            cleaned = cleaned[7:]
        elif cleaned.startswith('```'):
            cleaned = cleaned[3:]
        if cleaned.endswith('```'):
            cleaned = cleaned[:-3]
        cleaned = cleaned.strip()

        try:
            parsed = json.loads(cleaned)
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass

        block = self._first_balanced_object(cleaned)
        if block is None:
            raise MalformedResponseError("No JSON object found in response")

        try:
            return json.loads(block)
        except json.JSONDecodeError as e:
            logger.warning(f"JSON parsing error for Gemini response: {e}. Response length: {len(text)}")

        repaired = self._repair_json(block)
        if repaired is None:
            raise MalformedResponseError("JSON parsing failed, could not repair")
        logger.info("Successfully repaired JSON response")
        return repaired

    def _first_balanced_object(self, text: str) -> Optional[str]:
        """Return the first {...} block with balanced braces, ignoring braces inside strings"""
        start = text.find('{')
        while start != -1:
            depth = 0
            in_string = False
            escaped = False
            for i in range(start, len(text)):
                ch = text[i]
                if in_string:
                    if escaped:
                        escaped = False
                    elif ch == '\\':
                        escaped = True
                    elif ch == '"':
                        in_string = False
                    continue
                if ch == '"':
                    in_string = True
                elif ch == '{':
                    depth += 1
                elif ch == '}':
                    depth -= 1
                    if depth == 0:
                        return text[start:i + 1]
            # Unbalanced from here on; hand the tail to the repair step
            if depth > 0:
                return text[start:]
            start = text.find('{', start + 1)
        return None

    def _repair_json(self, broken_json: str) -> Optional[Dict[str, Any]]:
        """Attempt to repair common JSON issues"""
        repaired = broken_json

        # Fix unterminated string at end
        if repaired.count('"') % 2 == 1:
            repaired += '"'

        # Fix trailing commas
        repaired = re.sub(r',(\s*[}\]])', r'\1', repaired)
        repaired = repaired.rstrip().rstrip(',')

        # Fix missing closing brackets
        open_brackets = repaired.count('[') - repaired.count(']')
        if open_brackets > 0:
            repaired += ']' * open_brackets
        open_braces = repaired.count('{') - repaired.count('}')
        if open_braces > 0:
            repaired += '}' * open_braces

        try:
            parsed = json.loads(repaired)
        except json.JSONDecodeError as e:
            logger.warning(f"JSON repair failed: {e}")
            return None
        return parsed if isinstance(parsed, dict) else None

    def get_cache_stats(self) -> Dict[str, Any]:
        """Get cache performance statistics"""
        return {
            "cache_size": len(self._cache),
            "cache_ttl": self._cache_ttl,
            "request_timeout": self._request_timeout,
            "rate_limiter": self.rate_limiter.get_status(),
        }

    def clear_cache(self) -> None:
        """Clear the response cache"""
        self._cache.clear()


# Global instance
gemini_service = GeminiService()
