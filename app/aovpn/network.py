from typing import Optional

import requests

from aovpn import config
from aovpn.logger import get_logger
from aovpn.models import PublicIpInfo


def get_public_ip_address(
    url: Optional[str] = None,
    timeout: float = config.PUBLIC_IP_TIMEOUT,
) -> PublicIpInfo:
    """Ask a public lookup service which address this host is seen from."""
    logger = get_logger()
    url = url or config.PUBLIC_IP_URL
    logger.debug("Querying public IP address from %s", url)
    try:
        response = requests.get(url, timeout=timeout, headers={"Accept": "application/json"})
        response.raise_for_status()
        data = response.json()
    except requests.RequestException as exc:
        logger.warning("Public IP lookup failed: %s", exc)
        raise RuntimeError(f"Public IP lookup against {url} failed: {exc}") from exc
    except ValueError as exc:
        raise RuntimeError(f"Public IP lookup against {url} returned invalid JSON.") from exc

    if not isinstance(data, dict) or not data.get("ip"):
        raise RuntimeError(f"Public IP lookup against {url} returned no address.")

    return PublicIpInfo(
        ip=str(data["ip"]),
        hostname=str(data.get("hostname") or ""),
        city=str(data.get("city") or ""),
        region=str(data.get("region") or ""),
        country=str(data.get("country") or ""),
        org=str(data.get("org") or ""),
    )
