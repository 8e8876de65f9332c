from inspect import Parameter, iscoroutinefunction, isclass, isroutine, signature, unwrap
from typing import Callable, Iterator, List, Optional, Sequence

from fastapi import Request, Response


def extract_client_ip(request: Request) -> str:
    """Best available client IP for ``request``.

    Prefers the first ``X-Forwarded-For`` entry, then ``X-Real-IP``, then
    the socket peer. Empty values and the literal ``unknown`` are skipped.
    """
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        ip = forwarded_for.split(",")[0].strip()
        if ip and ip != "unknown":
            return ip

    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip and real_ip != "unknown":
        return real_ip

    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def cookie_values(cookie_header: Optional[str], name: str) -> List[str]:
    """Every value sent for cookie ``name``, in header order."""
    values: List[str] = []
    if not cookie_header:
        return values
    for part in cookie_header.split(";"):
        key, sep, value = part.strip().partition("=")
        if sep and key == name:
            values.append(value)
    return values


def merge_dedup_seq_params(
    *seqs_of_params: Sequence[Parameter],
):
    seen = {}
    for seq_of_params in seqs_of_params:
        for param in seq_of_params:
            if param.name not in seen:
                seen[param.name] = param
                yield param


def is_async_callable(call: Callable) -> bool:
    """True if calling ``call`` returns an awaitable coroutine."""
    call = unwrap(call)
    if isroutine(call):
        return iscoroutinefunction(call)
    if isclass(call):
        return False
    return iscoroutinefunction(getattr(call, "__call__", None))


def prepend_request_and_response_to_signature_params_of_function(
    function: Callable,
):
    yield Parameter(
        name="request",
        kind=Parameter.POSITIONAL_OR_KEYWORD,
        annotation=Request,
        default=Parameter.empty,
    )
    yield Parameter(
        name="response",
        kind=Parameter.POSITIONAL_OR_KEYWORD,
        annotation=Response,
        default=Parameter.empty,
    )
    yield from signature(function).parameters.values()


def rearrange_params(params: Iterator[Parameter]):
    """Order parameters so the resulting signature is valid.

    Order: POSITIONAL_ONLY, required POSITIONAL_OR_KEYWORD, optional
    POSITIONAL_OR_KEYWORD, VAR_POSITIONAL, KEYWORD_ONLY, VAR_KEYWORD.
    """

    def rank(param: Parameter) -> int:
        kind = param.kind
        if kind == Parameter.POSITIONAL_ONLY:
            return 0
        if kind == Parameter.POSITIONAL_OR_KEYWORD:
            return 1 if param.default is Parameter.empty else 2
        if kind == Parameter.VAR_POSITIONAL:
            return 3
        if kind == Parameter.KEYWORD_ONLY:
            return 4
        return 5

    # sorted() is stable, so declaration order is kept within each kind
    return sorted(params, key=rank)
