"""
Reasoning oracle: the external generation service behind classification and
specialist turns.

Routing and coordination depend only on the ``ReasoningOracle`` protocol:
- ``classify(request)`` returns one JSON object shaped by the request schema
- ``stream(request)`` yields typed events (tool-call, tool-result, text-delta,
  finish) for one specialist turn, one oracle round trip at a time

``HTTPReasoningOracle`` implements it against an OpenAI-compatible
``/chat/completions`` API using httpx (no vendor SDK). Every call claims a key
from the credential pool and reports the outcome back to it.

Environment configuration:
- LLM_API_BASE: Base URL (default: Gemini's OpenAI-compatible endpoint)
- LLM_MODEL: Model name (default: gemini-2.0-flash)
- LLM_TIMEOUT_SECONDS: Per-call timeout in seconds (default: 30.0)
"""
import json
import os
import time
from dataclasses import dataclass, field
from typing import (
    Any,
    AsyncIterator,
    Dict,
    List,
    Optional,
    Protocol,
    Union,
    runtime_checkable,
)

import httpx

from gradpilot.core.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError
from gradpilot.core.logging import get_logger
from gradpilot.core.metrics import (
    record_oracle_error,
    record_oracle_request,
    record_oracle_tokens,
)

from .credentials import (
    CredentialKey,
    CredentialRotationManager,
    FailureSignal,
    classify_failure,
    get_credential_manager,
)
from .errors import CredentialExhaustedError, CredentialRejectedError, ToolError
from .tools import Tool

logger = get_logger(__name__)

DEFAULT_API_BASE = "https://generativelanguage.googleapis.com/v1beta/openai"
DEFAULT_MODEL = "gemini-2.0-flash"


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


@dataclass(frozen=True)
class ToolCallEvent:
    tool_name: str
    call_id: str
    arguments: Dict[str, Any]
    round_trip: int = 1
    # Tokens spent by the turn up to and including the round trip that asked for this call.
    usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass(frozen=True)
class ToolResultEvent:
    tool_name: str
    call_id: str
    result: Any = None
    error: Optional[str] = None


@dataclass(frozen=True)
class TextDeltaEvent:
    text: str


@dataclass(frozen=True)
class FinishEvent:
    reason: str = "stop"
    usage: TokenUsage = field(default_factory=TokenUsage)


OracleEvent = Union[ToolCallEvent, ToolResultEvent, TextDeltaEvent, FinishEvent]


@dataclass
class ClassificationRequest:
    system: str
    messages: List[Dict[str, str]]
    schema: Dict[str, Any]
    schema_name: str = "task_classification"


@dataclass
class ExecutionRequest:
    system: str
    messages: List[Dict[str, Any]]
    tools: List[Tool] = field(default_factory=list)
    max_round_trips: int = 50


@runtime_checkable
class ReasoningOracle(Protocol):
    async def classify(self, request: ClassificationRequest) -> Dict[str, Any]:
        ...

    def stream(self, request: ExecutionRequest) -> AsyncIterator[OracleEvent]:
        ...


def parse_json_content(raw_text: str) -> Dict[str, Any]:
    """
    Parse a JSON object from model output, tolerating markdown code fences.

    Raises:
        json.JSONDecodeError / ValueError if no JSON object can be parsed.
    """
    content = raw_text.strip()
    if content.startswith("```"):
        content = content.split("\n", 1)[1] if "\n" in content else content[3:]
    if content.endswith("```"):
        content = content.rsplit("```", 1)[0]
    parsed = json.loads(content.strip())
    if not isinstance(parsed, dict):
        raise ValueError("expected a JSON object")
    return parsed


def _usage_from(data: Dict[str, Any]) -> TokenUsage:
    usage = data.get("usage") or {}
    return TokenUsage(
        input_tokens=int(usage.get("prompt_tokens") or 0),
        output_tokens=int(usage.get("completion_tokens") or 0),
    )


# ---------------------------------------------------------------------------
# HTTP implementation
# ---------------------------------------------------------------------------

class HTTPReasoningOracle:
    """OpenAI-compatible chat-completions oracle with credential rotation."""

    def __init__(
        self,
        credentials: CredentialRotationManager,
        api_base: str = DEFAULT_API_BASE,
        model: str = DEFAULT_MODEL,
        timeout_seconds: float = 30.0,
        temperature: float = 0.7,
        max_key_attempts: int = 3,
        circuit_breaker: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_base = api_base.rstrip("/")
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.temperature = temperature
        self.max_key_attempts = max_key_attempts
        self._credentials = credentials
        self._transport = transport
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            name="reasoning_oracle",
            failure_threshold=0.5,
            time_window_seconds=60,
            open_duration_seconds=30,
            excluded_exceptions=(CredentialRejectedError,),
        )

    async def _post(self, key: CredentialKey, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {key.secret}",
        }
        url = f"{self.api_base}/chat/completions"
        async with httpx.AsyncClient(
            timeout=self.timeout_seconds, transport=self._transport
        ) as client:
            response = await client.post(url, headers=headers, json=payload)
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            signal = classify_failure(exc)
            if signal is FailureSignal.OTHER:
                raise
            raise CredentialRejectedError(
                key.identifier, signal.value, response.status_code, str(exc)
            ) from exc
        return response.json()

    async def _complete(self, operation: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        One chat-completion round trip.

        Keys rejected for quota or authorization reasons are rotated out and the
        call is retried with the next key, up to ``max_key_attempts`` keys. A
        rejected key is the provider answering, so it never counts against the
        circuit breaker.

        Raises:
            CredentialExhaustedError: no key in the pool can take the call.
            CredentialRejectedError: every attempted key was refused.
            CircuitBreakerOpenError / httpx.HTTPError: transport failures.
        """
        for attempt in range(1, self.max_key_attempts + 1):
            key = self._credentials.get_available_key()
            if key is None:
                record_oracle_error(operation, "credentials_exhausted")
                raise CredentialExhaustedError(
                    "No available API keys. All keys are rate limited or exhausted."
                )

            start = time.perf_counter()
            try:
                data = await self.circuit_breaker.call_async(self._post, key, payload)
            except CircuitBreakerOpenError:
                self._credentials.release(key)
                record_oracle_error(operation, "circuit_open")
                logger.warning("oracle_circuit_open", operation=operation)
                raise
            except CredentialRejectedError as exc:
                self._credentials.track_failure(key, FailureSignal(exc.signal))
                record_oracle_error(operation, f"credential_{exc.signal}")
                logger.warning(
                    "oracle_credential_rejected",
                    operation=operation,
                    key=key.identifier,
                    attempt=attempt,
                    signal=exc.signal,
                    status_code=exc.status_code,
                )
                if attempt == self.max_key_attempts:
                    raise
                continue
            except httpx.HTTPError as exc:
                self._credentials.track_failure(key, FailureSignal.OTHER)
                record_oracle_error(operation, type(exc).__name__)
                logger.warning(
                    "oracle_http_error",
                    operation=operation,
                    key=key.identifier,
                    attempt=attempt,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                raise
            except Exception as exc:
                self._credentials.track_failure(key, exc)
                record_oracle_error(operation, "unexpected_error")
                logger.error(
                    "oracle_unexpected_error",
                    operation=operation,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    exc_info=True,
                )
                raise
            except BaseException:
                # Cancelled before the outcome was known.
                self._credentials.release(key)
                raise
            finally:
                record_oracle_request(operation, self.model, time.perf_counter() - start)

            self._credentials.track_usage(key)
            usage = _usage_from(data)
            record_oracle_tokens(operation, usage.input_tokens, usage.output_tokens)
            return data

        # Unreachable: the loop either returns or raises.
        raise CredentialExhaustedError("No API key accepted the request")

    async def classify(self, request: ClassificationRequest) -> Dict[str, Any]:
        payload = {
            "model": self.model,
            "messages": [{"role": "system", "content": request.system}, *request.messages],
            "temperature": 0.0,
            "response_format": {
                "type": "json_schema",
                "json_schema": {"name": request.schema_name, "schema": request.schema},
            },
        }
        data = await self._complete("classify", payload)
        content = (
            data.get("choices", [{}])[0]
            .get("message", {})
            .get("content", "")
        )
        return parse_json_content(content or "")

    async def stream(self, request: ExecutionRequest) -> AsyncIterator[OracleEvent]:
        messages: List[Dict[str, Any]] = [
            {"role": "system", "content": request.system},
            *request.messages,
        ]
        tools = {tool.name: tool for tool in request.tools}
        declarations = [tool.declaration() for tool in request.tools]
        usage = TokenUsage()
        round_trip = 0

        while True:
            payload: Dict[str, Any] = {
                "model": self.model,
                "messages": messages,
                "temperature": self.temperature,
            }
            if declarations:
                payload["tools"] = declarations

            data = await self._complete("execute", payload)
            usage = usage + _usage_from(data)
            choice = (data.get("choices") or [{}])[0]
            message = choice.get("message") or {}
            content = message.get("content")
            if content:
                yield TextDeltaEvent(text=content)

            tool_calls = message.get("tool_calls") or []
            if not tool_calls:
                yield FinishEvent(reason=choice.get("finish_reason") or "stop", usage=usage)
                return

            round_trip += 1
            messages.append({"role": "assistant", "content": content, "tool_calls": tool_calls})
            for call in tool_calls:
                function = call.get("function") or {}
                name = function.get("name", "")
                call_id = call.get("id") or f"call_{round_trip}_{name}"
                try:
                    arguments = json.loads(function.get("arguments") or "{}")
                except json.JSONDecodeError:
                    arguments = None

                yield ToolCallEvent(
                    tool_name=name,
                    call_id=call_id,
                    arguments=arguments or {},
                    round_trip=round_trip,
                    usage=usage,
                )

                result: Any = None
                error: Optional[str] = None
                tool = tools.get(name)
                if tool is None:
                    error = str(ToolError(name, "unknown tool"))
                elif not isinstance(arguments, dict):
                    error = str(ToolError(name, "arguments are not a JSON object"))
                else:
                    try:
                        result = await tool.run(arguments)
                    except ToolError as exc:
                        error = str(exc)

                yield ToolResultEvent(tool_name=name, call_id=call_id, result=result, error=error)
                messages.append({
                    "role": "tool",
                    "tool_call_id": call_id,
                    "content": json.dumps(
                        {"error": error} if error else {"result": result}, default=str
                    ),
                })

            if round_trip >= request.max_round_trips:
                yield FinishEvent(reason="round_trip_limit", usage=usage)
                return


_reasoning_oracle: Optional[HTTPReasoningOracle] = None


def get_reasoning_oracle() -> HTTPReasoningOracle:
    """Default HTTP oracle bound to the process credential pool."""
    global _reasoning_oracle
    if _reasoning_oracle is None:
        _reasoning_oracle = HTTPReasoningOracle(
            credentials=get_credential_manager(),
            api_base=os.getenv("LLM_API_BASE", DEFAULT_API_BASE),
            model=os.getenv("LLM_MODEL", DEFAULT_MODEL),
            timeout_seconds=float(os.getenv("LLM_TIMEOUT_SECONDS", "30.0") or "30.0"),
        )
    return _reasoning_oracle
