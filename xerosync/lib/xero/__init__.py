DEFAULT_XERO_API_BASE = "https://api.xero.com/api.xro/2.0"
DEFAULT_XERO_IDENTITY_URL = "https://identity.xero.com/connect/token"


def build_xero_client(*args: object, **kwargs: object):
    from xerosync.lib.xero.factory import build_xero_client as _build_xero_client

    return _build_xero_client(*args, **kwargs)


__all__ = ["DEFAULT_XERO_API_BASE", "DEFAULT_XERO_IDENTITY_URL", "build_xero_client"]
