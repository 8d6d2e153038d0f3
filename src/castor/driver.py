"""Provider driver: one class, one contract, many wire dialects.

A ``Driver`` owns a dialect (how to speak to one provider), a transport (how
bytes move), a cost engine and an event sink. Everything provider-specific
lives in the dialect; retry, stream assembly, tool execution and pricing are
shared.
"""

from __future__ import annotations

from dataclasses import replace
import logging
import random
import time
from typing import TYPE_CHECKING, Any

from castor.cache import TTLCache
from castor.classify import ErrorClassification, ErrorKind, to_provider_error
from castor.errors import ConfigurationError, ModelNotFoundError, ProviderError
from castor.events import CostCalculated, NullEventSink, notify_safely
from castor.models import CredentialCheck, HealthCheck, HealthStatus, Message
from castor.options import Options
from castor.pricing import (
    CostEngine,
    estimate_message_tokens,
    estimate_output_tokens,
    estimate_text_tokens,
)
from castor.providers import MockTransport, dialect_for
from castor.retry import RetryPolicy, retry_call
from castor.streaming import assemble_stream
from castor.tools import (
    continuation_messages,
    execute_calls,
    extract_calls,
    validate_definitions,
)
from castor.transport import HttpxTransport

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator, Mapping, Sequence

    from castor.config import ProviderConfig
    from castor.events import EventSink
    from castor.models import (
        DriverCapabilities,
        ExecutionResult,
        ModelDescriptor,
        Response,
        TokenUsage,
    )
    from castor.pricing import CostBreakdown, PricingStore
    from castor.providers.base import Dialect
    from castor.transport import ChatRequest, StreamHandle, Transport

log = logging.getLogger(__name__)

# Dialect parsers signal an unreadable payload with one of these.
_MALFORMED_PAYLOAD_ERRORS = (KeyError, IndexError, TypeError, ValueError, AttributeError)

_MODELS_KEY = "models"

MessageInput = Message | str


def _as_message(message: MessageInput) -> Message:
    if isinstance(message, Message):
        return message
    if isinstance(message, str):
        return Message.user(message)
    raise ConfigurationError(
        f"Expected a Message or str, got {type(message).__name__}",
        hint="Pass a plain string for a user turn or build one with Message.user(...).",
    )


class Driver:
    """Uniform synchronous client for one configured provider.

    Example:
        with Driver(ProviderConfig(provider="openai")) as driver:
            response = driver.send_message("Count to 3")
            print(response.content, response.cost.total_cost)
    """

    def __init__(
        self,
        config: ProviderConfig,
        *,
        dialect: Dialect | None = None,
        transport: Transport | None = None,
        cost_engine: CostEngine | None = None,
        pricing_store: PricingStore | None = None,
        event_sink: EventSink | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.config = config
        self.dialect = dialect or dialect_for(config)
        self.provider: str = self.dialect.name

        self._owns_transport = transport is None
        if transport is None:
            if config.use_mock or config.provider == "mock":
                transport = MockTransport(model=config.model or "mock-model")
            else:
                transport = HttpxTransport(timeout_s=config.timeout_s or 30.0)
        self.transport: Transport = transport

        self.cost_engine = cost_engine or CostEngine(
            store=pricing_store,
            cache=TTLCache(ttl_s=config.pricing_cache_ttl_s, clock=clock),
        )
        self.event_sink: EventSink = event_sink or NullEventSink()

        self._sleep = sleep
        self._clock = clock
        self._rng = rng
        self._models: TTLCache[tuple[ModelDescriptor, ...]] = TTLCache(
            ttl_s=config.models_cache_ttl_s, clock=clock
        )
        log.debug("Driver ready: %s", config)

    # =========================================================================
    # Messaging
    # =========================================================================

    def send_message(
        self, message: MessageInput, options: Options | None = None
    ) -> Response:
        """Send one message and return the final response."""
        return self.send_messages([_as_message(message)], options)

    def send_messages(
        self, messages: Sequence[MessageInput], options: Options | None = None
    ) -> Response:
        """Send a conversation and return the final response."""
        opts = options or Options()
        history = [_as_message(m) for m in messages]
        model = self._model(opts)
        request = self.dialect.build_chat_request(history, opts, model=model, stream=False)

        started = self._clock()
        payload = self._call(lambda: self.transport.request(request), self._policy(opts))
        try:
            response = self.dialect.parse_response(payload, model=model)
        except _MALFORMED_PAYLOAD_ERRORS as exc:
            raise self._malformed(exc) from exc

        response = replace(response, latency_ms=(self._clock() - started) * 1000.0)
        return self._complete(response)

    def send_streaming_message(
        self, message: MessageInput, options: Options | None = None
    ) -> Iterator[Response]:
        """Stream one message; see ``send_streaming_messages``."""
        return self.send_streaming_messages([_as_message(message)], options)

    def send_streaming_messages(
        self, messages: Sequence[MessageInput], options: Options | None = None
    ) -> Iterator[Response]:
        """Stream a conversation.

        Returns a lazy iterator: nothing is sent until the first ``next()``.
        Each chunk yields a partial ``Response``; the last item is the final
        ``Response`` with accumulated content, usage, calls and cost. Opening
        the stream is retried like a normal call; a failure after chunks have
        been yielded is raised as a ``ProviderError`` without retrying.
        """
        opts = options or Options()
        history = [_as_message(m) for m in messages]
        model = self._model(opts)
        request = self.dialect.build_chat_request(history, opts, model=model, stream=True)
        return self._stream(request, model, self._policy(opts))

    def _stream(
        self, request: ChatRequest, model: str, policy: RetryPolicy
    ) -> Iterator[Response]:
        started = self._clock()
        handle: StreamHandle = self._call(lambda: self.transport.stream(request), policy)
        try:
            chunks = self.dialect.iter_chunks(handle)
            for response in assemble_stream(
                chunks,
                self.dialect.chunk_parser(),
                provider=self.provider,
                model=model,
                clock=self._clock,
                started=started,
            ):
                yield response if response.partial else self._complete(response)
        except ProviderError:
            raise
        except Exception as exc:
            log.debug("%s stream failed mid-flight: %s", self.provider, type(exc).__name__)
            raise to_provider_error(exc, provider=self.provider) from exc
        finally:
            handle.close()

    # =========================================================================
    # Function / tool calling
    # =========================================================================

    def continue_with_results(
        self,
        messages: Sequence[MessageInput],
        response: Response,
        results: Sequence[ExecutionResult],
        options: Options | None = None,
    ) -> Response:
        """Send the results of *response*'s calls and return the next response."""
        history = [_as_message(m) for m in messages]
        return self.send_messages(continuation_messages(history, response, results), options)

    def conversation_with_functions(
        self,
        message: MessageInput,
        definitions: Sequence[Mapping[str, Any]],
        executor: Callable[[str, dict[str, Any]], Any] | None,
        options: Options | None = None,
        *,
        max_rounds: int = 1,
    ) -> Response:
        """Send *message* with tools, run requested calls, and continue.

        Stops when a response asks for no calls or after *max_rounds*
        continuations; returns the last response.
        """
        problems = validate_definitions(definitions)
        if problems:
            raise ConfigurationError(
                "Invalid function definitions: " + "; ".join(problems),
                hint="Each definition needs a name, a description and object parameters.",
            )
        if max_rounds < 0:
            raise ConfigurationError(f"max_rounds must be >= 0, got {max_rounds}")

        opts = options or Options()
        if not opts.definitions:
            opts = replace(opts, tools=[dict(d) for d in definitions])

        history = [_as_message(message)]
        response = self.send_messages(history, opts)
        for round_number in range(1, max_rounds + 1):
            calls = extract_calls(response)
            if not calls:
                break
            log.debug(
                "%s round %d: executing %d call(s)", self.provider, round_number, len(calls)
            )
            results = execute_calls(calls, executor)
            history = continuation_messages(history, response, results)
            response = self.send_messages(history, opts)
        return response

    # =========================================================================
    # Models, credentials, capabilities, cost
    # =========================================================================

    def get_available_models(self, *, force_refresh: bool = False) -> list[ModelDescriptor]:
        """List the provider's models, cached for ``models_cache_ttl_s``."""
        if not force_refresh:
            cached = self._models.get(_MODELS_KEY)
            if cached is not None:
                return list(cached)
        models = self._fetch_models(self.config.retry or RetryPolicy())
        return list(models)

    def get_model_info(self, model_id: str, *, force_refresh: bool = False) -> ModelDescriptor:
        """Descriptor for *model_id* from the (cached) model list."""
        for model in self.get_available_models(force_refresh=force_refresh):
            if model.id == model_id:
                return model
        raise ModelNotFoundError(
            f"Model {model_id} not found for {self.provider}",
            hint="get_available_models() lists the models these credentials can use.",
        )

    def _fetch_models(self, policy: RetryPolicy) -> tuple[ModelDescriptor, ...]:
        request = self.dialect.build_models_request()
        payload = self._call(lambda: self.transport.request(request), policy)
        try:
            models = tuple(self.dialect.parse_models(payload))
        except _MALFORMED_PAYLOAD_ERRORS as exc:
            raise self._malformed(exc) from exc
        self._models.set(_MODELS_KEY, models)
        log.debug("%s lists %d model(s)", self.provider, len(models))
        return models

    def validate_credentials(self) -> CredentialCheck:
        """Check the configured credentials with one model-list call.

        Never raises for provider failures; they are reported in ``errors``.
        """
        started = self._clock()
        try:
            models = self._fetch_models(RetryPolicy.no_retry())
        except ProviderError as exc:
            elapsed = (self._clock() - started) * 1000.0
            return CredentialCheck(
                valid=False,
                provider=self.provider,
                details={"kind": ErrorKind(exc.kind).value, "status_code": exc.status_code},
                errors=(str(exc),),
                response_time_ms=elapsed,
            )

        elapsed = (self._clock() - started) * 1000.0
        model_ids = {m.id for m in models}
        return CredentialCheck(
            valid=True,
            provider=self.provider,
            details={
                "models_available": len(models),
                "default_model": self.config.model,
                "default_model_available": self.config.model in model_ids,
            },
            response_time_ms=elapsed,
        )

    def get_health_status(self) -> HealthStatus:
        """Check configuration, connectivity, authentication and model access.

        Uses one single-attempt model-list call and sends no completion, so
        the check costs nothing. Never raises for provider failures.
        """
        started = self._clock()
        checks = [self._configuration_check()]
        try:
            models = self._fetch_models(RetryPolicy.no_retry())
        except ProviderError as exc:
            kind = ErrorKind(exc.kind)
            reachable = kind not in (ErrorKind.SERVER_ERROR, ErrorKind.TIMEOUT)
            checks.append(
                HealthCheck("connectivity", reachable, "API is reachable" if reachable else str(exc))
            )
            if reachable:
                authenticated = kind is not ErrorKind.INVALID_CREDENTIALS
                checks.append(
                    HealthCheck(
                        "authentication",
                        authenticated,
                        "Credentials are valid" if authenticated else str(exc),
                    )
                )
                if authenticated:
                    checks.append(
                        HealthCheck("models_access", False, f"Models endpoint error: {exc}")
                    )
        else:
            model_ids = {m.id for m in models}
            checks += [
                HealthCheck("connectivity", True, "API is reachable"),
                HealthCheck(
                    "authentication",
                    True,
                    "Credentials are valid"
                    if self.config.requires_api_key
                    else "No credentials required",
                ),
                HealthCheck(
                    "models_access",
                    bool(models),
                    f"{len(models)} models available" if models else "No models accessible",
                ),
                HealthCheck(
                    "default_model",
                    self.config.model in model_ids,
                    f"{self.config.model} is "
                    + ("available" if self.config.model in model_ids else "not listed"),
                ),
            ]

        status = HealthStatus(
            provider=self.provider,
            checks=tuple(checks),
            response_time_ms=(self._clock() - started) * 1000.0,
        )
        log.debug("%s health: %s", self.provider, status.status)
        return status

    def _configuration_check(self) -> HealthCheck:
        if self.config.requires_api_key and not self.config.api_key:
            return HealthCheck("configuration", False, f"API key required for {self.provider}")
        if not self.config.model:
            return HealthCheck("configuration", False, "No default model configured")
        return HealthCheck("configuration", True, "Configuration is valid")

    def get_capabilities(self, model: str | None = None) -> DriverCapabilities:
        """Feature flags for *model* (default: the configured model)."""
        return self.dialect.capabilities(model or self.config.model or "")

    def calculate_cost(self, usage: TokenUsage, model: str | None = None) -> CostBreakdown:
        """Cost of *usage* on *model* under this driver's provider."""
        return self.cost_engine.calculate_cost(
            self.provider,
            model or self.config.model or "",
            usage.input_tokens,
            usage.output_tokens,
        )

    def estimate_tokens(self, prompt: MessageInput | Sequence[MessageInput]) -> int:
        """Approximate input tokens for *prompt* without calling the provider.

        A bare string is counted as text; messages add per-message overhead
        and the size of any calls they carry.
        """
        if isinstance(prompt, str):
            return estimate_text_tokens(prompt)
        if isinstance(prompt, Message):
            return estimate_message_tokens(prompt)
        if isinstance(prompt, (list, tuple)):
            return sum(estimate_message_tokens(_as_message(m)) for m in prompt)
        raise ConfigurationError(
            f"Cannot estimate tokens for {type(prompt).__name__}",
            hint="Pass a string, a Message, or a list of them.",
        )

    def estimate_cost(
        self,
        prompt: MessageInput | Sequence[MessageInput],
        options: Options | None = None,
    ) -> CostBreakdown:
        """Estimate what sending *prompt* would cost, before sending it.

        Output tokens are ``options.max_tokens`` when set, otherwise a
        model-dependent share of the input estimate. No event is emitted.
        """
        opts = options or Options()
        model = self._model(opts)
        input_tokens = self.estimate_tokens(prompt)
        output_tokens = (
            opts.max_tokens
            if opts.max_tokens is not None
            else estimate_output_tokens(input_tokens, model)
        )
        return self.cost_engine.calculate_cost(
            self.provider, model, input_tokens, output_tokens
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def close(self) -> None:
        """Release the transport if this driver created it."""
        if self._owns_transport:
            self.transport.close()

    def __enter__(self) -> Driver:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # =========================================================================
    # Internals
    # =========================================================================

    def _model(self, options: Options) -> str:
        return options.model or self.config.model or ""

    def _policy(self, options: Options) -> RetryPolicy:
        return options.retry or self.config.retry or RetryPolicy()

    def _call(self, operation: Callable[[], Any], policy: RetryPolicy) -> Any:
        return retry_call(
            operation,
            policy=policy,
            provider=self.provider,
            sleep=self._sleep,
            rng=self._rng,
        )

    def _malformed(self, exc: Exception) -> ProviderError:
        classification = ErrorClassification(
            kind=ErrorKind.GENERIC,
            retryable=False,
            message=f"Unexpected response shape: {exc}",
        )
        return to_provider_error(exc, provider=self.provider, classification=classification)

    def _complete(self, response: Response) -> Response:
        """Attach cost to a final response and announce it."""
        if response.finish_reason == "error":
            # A cut-short stream is not a completed reply.
            return response
        try:
            cost = self.calculate_cost(response.usage, response.model or None)
        except Exception as exc:
            log.warning("Cost calculation failed for %s: %s", self.provider, exc)
            return response
        notify_safely(self.event_sink, CostCalculated.from_breakdown(cost))
        return replace(response, cost=cost)
