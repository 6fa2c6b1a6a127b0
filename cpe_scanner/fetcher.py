# cpe_scanner/fetcher.py
import gzip
import logging
import shutil
from email.utils import parsedate_to_datetime
from pathlib import Path
from urllib.parse import unquote, urlparse

import requests

from .config import Settings
from .exceptions import DownloadFailedError, InvalidDataError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 65536


def _local_path(url: str) -> Path | None:
    """Path for file:// URLs and plain filesystem paths, None for remote URLs."""
    parsed = urlparse(url)
    if parsed.scheme == "file":
        return Path(unquote(parsed.path))
    if parsed.scheme in ("http", "https"):
        return None
    # bare paths, including Windows drive letters that urlparse reads as a scheme
    return Path(url)


class Downloader:
    """Fetches feed files and their Last-Modified timestamps over HTTP(S) or from a local mirror."""

    def __init__(self, settings: Settings, session: requests.Session | None = None):
        self.settings = settings
        self.session = session or requests.Session()

    def _proxies(self, with_credentials: bool = False) -> dict | None:
        if self.settings.proxy is None:
            return None
        return self.settings.proxy.as_requests_proxies(with_credentials)

    def _send(self, method: str, url: str, with_credentials: bool = False, **kwargs) -> requests.Response:
        return self.session.request(method, url, proxies=self._proxies(with_credentials),
                                    timeout=self.settings.connection_timeout, **kwargs)

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        proxy = self.settings.proxy
        can_authenticate = proxy is not None and proxy.has_credentials
        try:
            try:
                response = self._send(method, url, **kwargs)
                needs_auth = response.status_code == 407
            except requests.exceptions.ProxyError:
                # HTTPS tunnels report a 407 on CONNECT as a ProxyError
                if not can_authenticate:
                    raise
                response, needs_auth = None, True
            if needs_auth and can_authenticate:
                logger.debug(f"Proxy authentication required for {url}; retrying with credentials")
                if response is not None:
                    response.close()
                response = self._send(method, url, with_credentials=True, **kwargs)
            response.raise_for_status()
            return response
        except requests.exceptions.Timeout as e:
            raise DownloadFailedError(f"Request timed out while fetching {url}") from e
        except requests.exceptions.RequestException as e:
            raise DownloadFailedError(f"Error fetching {url}: {e}") from e

    def fetch_file(self, url: str, output_path) -> Path:
        """
        Downloads `url` to `output_path`. A URL ending in '.gz' is decompressed on
        the way in, so the output is always the plain file.
        """
        output_path = Path(output_path)
        decompress = url.lower().endswith(".gz")
        local = _local_path(url)
        try:
            if local is not None:
                if not local.is_file():
                    raise DownloadFailedError(f"Local feed file not found: {local}")
                opener = gzip.open if decompress else open
                with opener(local, "rb") as src, open(output_path, "wb") as dst:
                    shutil.copyfileobj(src, dst, CHUNK_SIZE)
            else:
                with self._request("GET", url, stream=True) as response:
                    response.raw.decode_content = True
                    source = gzip.GzipFile(fileobj=response.raw) if decompress else response.raw
                    with open(output_path, "wb") as dst:
                        shutil.copyfileobj(source, dst, CHUNK_SIZE)
        except (OSError, EOFError) as e:
            raise DownloadFailedError(f"Unable to save {url} to {output_path}: {e}") from e
        except requests.exceptions.RequestException as e:
            raise DownloadFailedError(f"Error reading {url}: {e}") from e
        logger.debug(f"Downloaded {url} to {output_path}")
        return output_path

    def get_last_modified(self, url: str) -> int:
        """Last-Modified of `url` in epoch milliseconds (file mtime for local mirrors)."""
        local = _local_path(url)
        if local is not None:
            try:
                return int(local.stat().st_mtime * 1000)
            except OSError as e:
                raise DownloadFailedError(f"Unable to read timestamp of {local}: {e}") from e

        response = self._request("HEAD", url, allow_redirects=True)
        header = response.headers.get("Last-Modified")
        if not header:
            raise DownloadFailedError(f"No Last-Modified header returned for {url}")
        try:
            return int(parsedate_to_datetime(header).timestamp() * 1000)
        except (TypeError, ValueError) as e:
            raise InvalidDataError(f"Unparsable Last-Modified '{header}' for {url}") from e
