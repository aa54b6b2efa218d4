"""Per-endpoint request handling: auth, budget, forward, validate."""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, ValidationError

from .assistant import AssistantService
from .auth import CredentialValidator, caller_key
from .backend import AIBackend, GeminiBackend
from .config import GatewayConfig
from .errors import BackendFailure, BackendUnconfigured, BadRequest, BudgetExceeded, GatewayError, Unauthorized
from .metrics import MetricsCollector, NamedCounters, RequestLogger
from .models import AnalyzeRequest, FormHelpRequest, TranslateRequest, VoiceCommandRequest
from .rate_limiter import TokenBucketLimiter

logger = logging.getLogger(__name__)

BackendFactory = Callable[[GatewayConfig], AIBackend]


@dataclass(frozen=True)
class Endpoint:
    """One assistant endpoint: its body schema, operation and error messages."""
    name: str
    request_model: type[BaseModel]
    operation: Callable[[AssistantService, Any], Awaitable[Any]]
    missing_message: str
    failure_message: str


ENDPOINTS: dict[str, Endpoint] = {
    "analyze": Endpoint(
        name="analyze",
        request_model=AnalyzeRequest,
        operation=lambda service, body: service.analyze_page_structure(body.html),
        missing_message="Missing HTML content",
        failure_message="Analysis failed",
    ),
    "translate": Endpoint(
        name="translate",
        request_model=TranslateRequest,
        operation=lambda service, body: service.translate_text(
            body.text, body.target_lang, body.source_lang
        ),
        missing_message="Missing required fields",
        failure_message="Translation failed",
    ),
    "voice-command": Endpoint(
        name="voice-command",
        request_model=VoiceCommandRequest,
        operation=lambda service, body: service.process_voice_command(
            body.command, body.page_context
        ),
        missing_message="Missing voice command",
        failure_message="Command processing failed",
    ),
    "form-help": Endpoint(
        name="form-help",
        request_model=FormHelpRequest,
        operation=lambda service, body: service.generate_form_help(
            body.field_name, body.field_type, body.context
        ),
        missing_message="Missing required fields",
        failure_message="Help generation failed",
    ),
}


@dataclass
class HandlerResult:
    """Status, JSON body and extra headers for one handled request."""
    status_code: int
    body: dict
    headers: dict[str, str] = field(default_factory=dict)


class ServiceProvider:
    """
    Builds the AssistantService on demand.

    The backend client is created on first use and reused afterwards;
    BackendUnconfigured propagates while no AI credential is configured.
    """

    def __init__(
        self,
        config: GatewayConfig,
        metrics: MetricsCollector,
        backend_factory: Optional[BackendFactory] = None,
    ):
        self._config = config
        self._metrics = metrics
        self._backend_factory = backend_factory or GeminiBackend.from_config
        self._backend: Optional[AIBackend] = None

    @property
    def configured(self) -> bool:
        return self._backend is not None or bool(self._config.ai_api_key)

    def get(self) -> AssistantService:
        if self._backend is None:
            self._backend = self._backend_factory(self._config)
        return AssistantService(self._backend, self._metrics)

    async def aclose(self) -> None:
        if self._backend is not None:
            await self._backend.aclose()
            self._backend = None


class GatewayHandler:
    """
    Runs one request through the admission pipeline.

    Received -> AuthChecked -> BudgetChecked -> Forwarded -> Validated -> Responded

    Auth failures end with 401 and empty budgets with 429 before any body
    parsing. A single backend attempt is made. Exactly one request metric is
    recorded per call, whatever the outcome.
    """

    def __init__(
        self,
        credentials: CredentialValidator,
        limiter: TokenBucketLimiter,
        metrics: MetricsCollector,
        counters: NamedCounters,
        services: ServiceProvider,
        request_logger: Optional[RequestLogger] = None,
    ):
        self._credentials = credentials
        self._limiter = limiter
        self._metrics = metrics
        self._counters = counters
        self._services = services
        self._request_logger = request_logger or RequestLogger()

    def authenticate(self, api_key: Optional[str]) -> str:
        """Return the bucket key for a valid credential or raise Unauthorized."""
        if not self._credentials.validate(api_key):
            raise Unauthorized()
        return caller_key(api_key)

    async def handle(self, endpoint: Endpoint, api_key: Optional[str], body: Any) -> HandlerResult:
        """
        Handle one request for ``endpoint``.

        Args:
            endpoint: Endpoint definition
            api_key: Raw credential header, None when absent
            body: Decoded JSON body, None when it could not be decoded

        Returns:
            HandlerResult; gateway errors are converted, never raised
        """
        start_time = time.perf_counter()
        status_code = 500
        rate_limited = False
        error: Optional[str] = None
        headers: dict[str, str] = {}
        self._counters.incr(f"{endpoint.name}.requests")

        try:
            key = self.authenticate(api_key)

            decision = await self._limiter.check(key)
            if decision.degraded:
                self._counters.incr("ratelimit.store_errors")
            if not decision.allowed:
                rate_limited = True
                raise BudgetExceeded(retry_after=decision.retry_after)
            headers["X-RateLimit-Remaining"] = str(int(decision.remaining))

            try:
                request = endpoint.request_model.model_validate(body)
            except ValidationError as e:
                raise BadRequest(endpoint.missing_message) from e

            service = self._services.get()
            try:
                result = await endpoint.operation(service, request)
            except BackendUnconfigured:
                raise
            except Exception as e:
                logger.error(
                    "AI backend call failed",
                    extra={"endpoint": endpoint.name, "reason": str(e)},
                    exc_info=not isinstance(e, BackendFailure),
                )
                raise BackendFailure(endpoint.failure_message) from e

            status_code = 200
            return HandlerResult(status_code, result.to_wire(), headers)

        except GatewayError as e:
            status_code = e.status_code
            error = e.message
            if isinstance(e, BudgetExceeded):
                headers["Retry-After"] = str(int(e.retry_after) + 1)
                headers["X-RateLimit-Remaining"] = "0"
            return HandlerResult(status_code, e.to_body(), headers)

        finally:
            duration = time.perf_counter() - start_time
            self._metrics.record_request(endpoint.name, status_code, duration)
            self._counters.incr(f"{endpoint.name}.status.{status_code}")
            self._request_logger.log_request(
                endpoint=endpoint.name,
                status_code=status_code,
                latency_ms=duration * 1000,
                rate_limited=rate_limited,
                error=error,
            )
