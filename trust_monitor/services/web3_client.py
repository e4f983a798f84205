# trust_monitor/services/web3_client.py
import logging
import os
from functools import lru_cache
from typing import Optional

from web3 import Web3

from trust_monitor.services.exceptions import MonitorConfigError

logger = logging.getLogger(__name__)

RPC_TIMEOUT_SECONDS = 10


def _poa_middleware():
    # v7: ExtraDataToPOAMiddleware, v6: geth_poa_middleware
    try:
        from web3.middleware import ExtraDataToPOAMiddleware
        return ExtraDataToPOAMiddleware
    except ImportError:
        from web3.middleware import geth_poa_middleware
        return geth_poa_middleware


def make_w3(uri: Optional[str] = None, use_poa: Optional[bool] = None) -> Web3:
    uri = uri or os.getenv("WEB3_PROVIDER_URI")
    if not uri:
        raise MonitorConfigError("WEB3_PROVIDER_URI is not set")

    w3 = Web3(Web3.HTTPProvider(uri, request_kwargs={"timeout": RPC_TIMEOUT_SECONDS}))

    if use_poa is None:
        use_poa = os.getenv("WEB3_USE_POA", "false").lower() in ("1", "true", "yes", "on")
    if use_poa:
        w3.middleware_onion.inject(_poa_middleware(), layer=0)

    # No is_connected() here: the first failed RPC is recorded as a transient cycle failure.
    logger.info("Web3 provider configured: %s (poa=%s)", uri, use_poa)
    return w3


@lru_cache(maxsize=1)
def get_w3() -> Web3:
    """Lazy singleton: built on first use and reused afterwards."""
    return make_w3()
