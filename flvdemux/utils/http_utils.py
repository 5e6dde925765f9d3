import logging

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from flvdemux.configs import settings

logger = logging.getLogger(__name__)


class DownloadError(Exception):
    def __init__(self, status_code, message):
        self.status_code = status_code
        self.message = message
        super().__init__(message)


def create_httpx_client(follow_redirects: bool = True, **kwargs) -> httpx.AsyncClient:
    """
    Create an HTTPX AsyncClient using the configured transports and timeout.

    Args:
        follow_redirects (bool): Whether to follow 3xx redirects automatically.
        **kwargs: Additional AsyncClient keyword arguments.

    Returns:
        httpx.AsyncClient: Configured client.
    """
    kwargs.setdefault("mounts", settings.transport_config.get_mounts())
    kwargs.setdefault("timeout", settings.transport_config.timeout)
    kwargs.setdefault("verify", not settings.transport_config.disable_ssl_verification_globally)
    return httpx.AsyncClient(follow_redirects=follow_redirects, **kwargs)


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=4, max=10),
    retry=retry_if_exception_type(DownloadError),
)
async def open_stream(client: httpx.AsyncClient, url: str, headers: dict) -> httpx.Response:
    """
    Send a streaming GET request and return the response once headers arrive.

    Transient failures are retried; a 404 is raised immediately.

    Raises:
        DownloadError: If the request keeps failing.
        httpx.HTTPStatusError: On 404.
    """
    try:
        request = client.build_request("GET", url, headers=headers)
        response = await client.send(request, stream=True)
        response.raise_for_status()
        return response
    except httpx.TimeoutException:
        logger.warning(f"Timeout while opening {url}")
        raise DownloadError(409, f"Timeout while opening {url}")
    except httpx.HTTPStatusError as e:
        await e.response.aclose()
        logger.error(f"HTTP error {e.response.status_code} while opening {url}")
        if e.response.status_code == 404:
            raise e
        raise DownloadError(e.response.status_code, f"HTTP error {e.response.status_code} while opening {url}")
    except httpx.RequestError as e:
        logger.error(f"Error opening {url}: {e}")
        raise DownloadError(502, f"Error opening {url}: {e}")
