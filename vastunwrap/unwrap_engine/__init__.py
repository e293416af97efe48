"""
Wrapper unwrapping engine.

Modules:
    address  – DNS resolution and forbidden-range classification
    endpoint – URL policy checks (scheme, credentials, allowlist)
    fetcher  – Bounded HTTP fetches with revalidated redirects
    merge    – Tracker merge of wrapper surfaces into InLine ads
    resolver – Wrapper chain walk and resolution cache
"""

from vastunwrap.unwrap_engine.address import AddressSafetyChecker, is_forbidden_ip
from vastunwrap.unwrap_engine.endpoint import EndpointValidator
from vastunwrap.unwrap_engine.fetcher import FetchResponse, SecureFetcher, create_http_client
from vastunwrap.unwrap_engine.merge import MergeEngine
from vastunwrap.unwrap_engine.resolver import ResolutionResult, WrapperResolver

__all__ = [
    "AddressSafetyChecker",
    "is_forbidden_ip",
    "EndpointValidator",
    "SecureFetcher",
    "FetchResponse",
    "create_http_client",
    "MergeEngine",
    "WrapperResolver",
    "ResolutionResult",
]
