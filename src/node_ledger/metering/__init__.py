"""
NODE LEDGER - Metering Module

Turns live inference traffic into tasks and earnings.
"""

from .interceptor import MeteringInterceptor, MeteredCall, MeteringOutcome
from .middleware import MeteringMiddleware, ResponseRecorder, metered_routes
from .tokens import (
    estimate_tokens,
    estimate_input_tokens,
    extract_usage,
    parse_response_body,
    ResponseUsage,
)

__all__ = [
    "MeteringInterceptor",
    "MeteredCall",
    "MeteringOutcome",
    "MeteringMiddleware",
    "ResponseRecorder",
    "metered_routes",
    "estimate_tokens",
    "estimate_input_tokens",
    "extract_usage",
    "parse_response_body",
    "ResponseUsage",
]
