# aegis/services/web3_client.py
from functools import lru_cache

from web3 import Web3


def _poa_middleware():
    # v7: ExtraDataToPOAMiddleware; v6: geth_poa_middleware
    try:
        from web3.middleware import ExtraDataToPOAMiddleware
        return ExtraDataToPOAMiddleware
    except ImportError:
        from web3.middleware import geth_poa_middleware
        return geth_poa_middleware


def make_w3(provider_uri: str, use_poa: bool = False, timeout: int = 10) -> Web3:
    if not provider_uri:
        raise RuntimeError("WEB3_PROVIDER_URI no está definido")

    w3 = Web3(Web3.HTTPProvider(provider_uri, request_kwargs={"timeout": timeout}))

    # POA (Base Sepolia, etc.) si viene habilitado
    if use_poa:
        w3.middleware_onion.inject(_poa_middleware(), layer=0)

    if not w3.is_connected():
        raise RuntimeError("No se pudo conectar al nodo Web3")
    return w3


@lru_cache(maxsize=4)
def get_w3(provider_uri: str, use_poa: bool = False) -> Web3:
    """Perezoso: una instancia por (uri, poa), creada la primera vez y reusada."""
    return make_w3(provider_uri, use_poa)
