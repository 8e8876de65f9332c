from functools import wraps
from inspect import Signature, signature
from typing import Any, Callable, Optional

from fastapi import HTTPException, Request, Response, status

from fastapi_bot_trap.pipeline import TEST_MODE_HEADER, AdmissionPipeline, RequestContext
from fastapi_bot_trap.utils import (
    is_async_callable,
    merge_dedup_seq_params,
    prepend_request_and_response_to_signature_params_of_function,
    rearrange_params,
)

EndPointFunc = Callable[..., Any]

IS_BOT_TRAPPED_ENDPOINT_KEY = "__bot_trapped__"
"""Callable with this attribute evaluating to `True` is guarded by an `AdmissionShield`"""


class AdmissionShield:
    """Guards individual endpoints with the admission pipeline.

    Allowed requests reach the endpoint; challenges and blocks are answered
    with the pipeline's own response and the endpoint never runs. In test
    mode the ``X-Bot-Trap-Test-Mode`` header is added to whatever the
    endpoint returns.
    """

    __slots__ = ("pipeline", "name", "site_id", "__weakref__")

    def __init__(
        self,
        pipeline: AdmissionPipeline,
        *,
        name: Optional[str] = None,
        site_id: str = "default",
    ):
        assert isinstance(pipeline, AdmissionPipeline), (
            "`pipeline` must be an instance of `AdmissionPipeline`"
        )
        self.pipeline = pipeline
        self.name = name or "BotTrap"
        self.site_id = site_id

    def __call__(self, endpoint: EndPointFunc) -> EndPointFunc:
        assert callable(endpoint), "`endpoint` must be callable"

        endpoint_params = signature(endpoint).parameters
        endpoint_is_async = is_async_callable(endpoint)

        @wraps(endpoint)
        async def wrapper(*args, **kwargs):
            request: Request = kwargs.get("request")
            if not request:
                raise HTTPException(
                    status.HTTP_400_BAD_REQUEST,
                    detail="Request is required",
                )

            decision = await self.pipeline.evaluate(
                RequestContext.from_request(request, self.site_id)
            )
            if not decision.passes_through:
                return decision.to_response()

            endpoint_kwargs = {k: v for k, v in kwargs.items() if k in endpoint_params}
            if endpoint_is_async:
                result = await endpoint(*args, **endpoint_kwargs)
            else:
                result = endpoint(*args, **endpoint_kwargs)

            if TEST_MODE_HEADER in decision.headers:
                # FastAPI merges the injected response's headers into non-Response results
                target = result if isinstance(result, Response) else kwargs.get("response")
                if target is not None:
                    decision.apply_headers(target)
            return result

        wrapper.__signature__ = Signature(
            rearrange_params(
                merge_dedup_seq_params(
                    prepend_request_and_response_to_signature_params_of_function(endpoint),
                )
            )
        )
        setattr(wrapper, IS_BOT_TRAPPED_ENDPOINT_KEY, True)
        return wrapper


def bot_trap_shield(
    pipeline: AdmissionPipeline,
    /,
    name: Optional[str] = None,
    site_id: str = "default",
) -> AdmissionShield:
    """Create an endpoint decorator that runs the admission pipeline first.

    Examples:
        ```python
        trap = BotTrap(MemoryKeyValueStore(), secret="change-me")

        @app.get("/articles/{slug}")
        @bot_trap_shield(trap.pipeline)
        async def article(slug: str):
            return {"slug": slug}
        ```
    """
    return AdmissionShield(pipeline, name=name, site_id=site_id)
