"""Client - Negotiates a DWR session and dispatches plain calls.

A DWRClient performs the ``__System.generateId`` handshake, then sends
each remote call as an HTTP POST to the plain-call endpoint and returns
the raw response. Parsing the callback payload is left to the caller.

See DESIGN.md "Session Negotiator" and "Request Encoder" for details.
"""

from __future__ import annotations

import logging
import ssl
from threading import RLock
from typing import Any, Mapping, Sequence

import httpx

from dwr_client.cookies import public_suffix_cookie_jar
from dwr_client.models import ClientConfig
from dwr_client.params import Params, call_path, mandated_params, merge_params
from dwr_client.session import (
    GENERATE_ID_METHOD,
    SESSION_COOKIE_NAME,
    SYSTEM_SCRIPT,
    TokenExtractor,
    build_script_session_id,
    extract_session_token,
)

logger = logging.getLogger(__name__)


class DWRError(Exception):
    """Base class for dwr-client errors."""


class ConfigurationError(DWRError):
    """Raised when the client cannot be constructed (e.g., malformed base URL)."""


class NotInitializedError(DWRError):
    """Raised when a call is attempted before the handshake succeeded."""


class SessionTokenNotFoundError(DWRError):
    """Raised when the handshake reply does not carry a session token."""


def _parse_base_url(base_url: str) -> str:
    """Validate the base URL and return it without a trailing slash.

    Raises:
        ConfigurationError: If the URL cannot be parsed, is not http(s),
            or has no host.
    """
    try:
        url = httpx.URL(base_url)
    except (httpx.InvalidURL, TypeError) as e:
        logger.error("Invalid DWR base URL %r: %s", base_url, e)
        raise ConfigurationError(f"Invalid base URL '{base_url}': {e}") from e

    if url.scheme not in ("http", "https") or not url.host:
        logger.error("Invalid DWR base URL %r: expected http(s)://host[/path]", base_url)
        raise ConfigurationError(
            f"Invalid base URL '{base_url}'. Expected http(s)://host[/path]"
        )

    return str(url).rstrip("/")


class DWRClient:
    """Direct Web Remoting client bound to one web application.

    Usage:
        client = DWRClient("https://example.com/app", {"callCount": "1"})
        try:
            response = client.request("info.do", "MySvcAjax", "getData",
                                      extra_params={"c0-param0": "string:42"})
            try:
                body = response.read().decode()
            finally:
                response.close()
        finally:
            client.close()

    Or with context manager:
        with DWRClient(base_url, base_params) as client:
            ...

    The batch counter and session state belong to the instance. Dispatch is
    serialized by a per-client lock; use one client per thread for
    parallel calls.
    """

    def __init__(
        self,
        base_url: str,
        base_params: Mapping[str, str] | None = None,
        *,
        timeout: float = 30.0,
        headers: Mapping[str, str] | None = None,
        verify_ssl: bool = True,
        ca_bundle: str | None = None,
        cert: str | None = None,
        key: str | None = None,
        transport: httpx.BaseTransport | None = None,
        token_extractor: TokenExtractor | None = None,
        initialize: bool = True,
    ) -> None:
        """Create the client and, by default, perform the handshake.

        Args:
            base_url: Base URL of the web application (DWR lives under /dwr).
            base_params: Parameters added to every call, overridable per call.
            timeout: Transport timeout in seconds.
            headers: Static headers sent with every request.
            verify_ssl: Verify the server certificate.
            ca_bundle: Path to a CA bundle used for verification.
            cert: Path to a client certificate (mTLS).
            key: Path to the client certificate key.
            transport: Custom httpx transport (e.g., httpx.MockTransport).
            token_extractor: Callable pulling the session token out of the
                             handshake reply. Defaults to extract_session_token.
            initialize: Perform the handshake now. When False, call
                        initialize() before issuing requests.

        Raises:
            ConfigurationError: If base_url is malformed or TLS files are unusable.
            SessionTokenNotFoundError: If the handshake reply has no token.
            httpx.HTTPError: If the handshake request fails in transport.
        """
        self._base_url = _parse_base_url(base_url)
        self._base_params = Params(base_params or {})
        self._token_extractor = token_extractor or extract_session_token

        self._batch_id = 0
        self._initialized = False
        self._script_session_id = ""
        # Reentrant: initialize() dispatches through request().
        self._lock = RLock()

        self._http_client = httpx.Client(
            **self._build_client_kwargs(
                timeout=timeout,
                headers=headers,
                verify_ssl=verify_ssl,
                ca_bundle=ca_bundle,
                cert=cert,
                key=key,
                transport=transport,
            )
        )

        if initialize:
            # Close the transport if the handshake fails; the caller never
            # receives the instance so nothing else would close it.
            try:
                self.initialize()
            except Exception:
                self._http_client.close()
                raise

    @classmethod
    def from_config(cls, config: ClientConfig, **kwargs: Any) -> "DWRClient":
        """Build a client from a ClientConfig. Extra kwargs pass through to __init__."""
        return cls(
            config.base_url,
            config.base_params,
            timeout=config.timeout,
            headers=config.headers,
            verify_ssl=config.verify_ssl,
            ca_bundle=config.ca_bundle,
            cert=config.cert,
            key=config.key,
            **kwargs,
        )

    def __enter__(self) -> "DWRClient":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        self.close()

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._http_client.close()

    @property
    def session_id(self) -> str:
        """Current script-session ID; empty until the handshake succeeds."""
        return self._script_session_id

    @property
    def http_client(self) -> httpx.Client:
        """The underlying httpx.Client (cookie jar, headers, transport)."""
        return self._http_client

    @property
    def batch_id(self) -> int:
        """Batch ID the next call will carry."""
        return self._batch_id

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def base_params(self) -> Params:
        """A copy of the base parameters."""
        return Params(self._base_params)

    def _build_client_kwargs(
        self,
        timeout: float,
        headers: Mapping[str, str] | None,
        verify_ssl: bool,
        ca_bundle: str | None,
        cert: str | None,
        key: str | None,
        transport: httpx.BaseTransport | None,
    ) -> dict[str, Any]:
        """Build kwargs for httpx.Client including TLS configuration.

        Redirects are never followed: the handshake framing depends on the
        immediate response body. Cookies live in a jar that rejects
        public-suffix domains.

        Raises:
            ConfigurationError: If the CA bundle or client certificate cannot be loaded.
        """
        kwargs: dict[str, Any] = {
            "headers": dict(headers or {}),
            "timeout": timeout,
            "follow_redirects": False,
            "cookies": public_suffix_cookie_jar(),
        }

        if ca_bundle or cert:
            try:
                ssl_context = ssl.create_default_context(cafile=ca_bundle)
                if cert:
                    ssl_context.load_cert_chain(cert, key)
            except (OSError, ssl.SSLError) as e:
                logger.error("Unable to load TLS material: %s", e)
                raise ConfigurationError(f"Unable to load TLS material: {e}") from e

            if not verify_ssl:
                ssl_context.check_hostname = False
                ssl_context.verify_mode = ssl.CERT_NONE

            kwargs["verify"] = ssl_context
        elif not verify_ssl:
            kwargs["verify"] = False
        # else: use httpx default (True)

        if transport is not None:
            kwargs["transport"] = transport

        return kwargs

    def initialize(self) -> None:
        """Perform the ``__System.generateId`` handshake.

        Resets the batch counter, sends the handshake call, extracts the
        server session token and derives the script-session ID. The token
        is also installed as a host-only DWRSESSIONID cookie for the base URL.

        On any failure the client is left uninitialized and the error is
        raised; calling initialize() again is allowed.

        Raises:
            SessionTokenNotFoundError: If the reply has no session token.
            httpx.HTTPError: If the request or the body read fails.
        """
        with self._lock:
            self._batch_id = 0
            # The handshake itself goes through request(), which checks this flag.
            self._initialized = True
            try:
                response = self.request("", SYSTEM_SCRIPT, GENERATE_ID_METHOD)
                try:
                    response.read()
                    body = response.text
                finally:
                    response.close()

                token = self._token_extractor(body)
                if not token:
                    raise SessionTokenNotFoundError(
                        "Could not find session ID in response body"
                    )
                self._set_session(token)
            except Exception:
                self._initialized = False
                raise

            logger.debug("DWR session established for %s", self._base_url)

    def _set_session(self, server_token: str) -> None:
        """Install the session cookie and derive the script-session ID.

        The cookie is stored as if the base URL had sent it: host-only, with
        the default path for that URL.
        """
        self._http_client.cookies.extract_cookies(
            httpx.Response(
                200,
                headers={"set-cookie": f"{SESSION_COOKIE_NAME}={server_token}"},
                request=httpx.Request("POST", self._base_url),
            )
        )
        self._script_session_id = build_script_session_id(server_token)

    def request(
        self,
        page: str,
        script: str,
        method: str,
        args: Sequence[str] | None = None,
        extra_params: Mapping[str, str] | None = None,
    ) -> httpx.Response:
        """Send one DWR plain call and return the raw HTTP response.

        Parameters are layered in increasing precedence: protocol-mandated
        fields, the client's base parameters, then ``extra_params``.

        The response is opened in streaming mode and handed over unread;
        the caller reads and closes it.

        Args:
            page: Page the call originates from (``/`` is sent as ``%2F``).
            script: Remote script (class) name.
            method: Remote method name.
            args: Accepted but not encoded. Pass arguments through
                  ``extra_params`` as ``c0-paramN`` keys.
            extra_params: Per-call parameters, overriding everything else.

        Returns:
            The httpx.Response, including 3xx responses (redirects are not followed).

        Raises:
            NotInitializedError: If the handshake has not succeeded.
            httpx.HTTPError: If the transport fails. The batch ID is not advanced.
        """
        with self._lock:
            if not self._initialized:
                raise NotInitializedError("DWR client not initialized")

            params = merge_params(
                mandated_params(page, self._batch_id, self._script_session_id, script, method),
                self._base_params,
                extra_params,
            )
            url = self._base_url + call_path(script, method)

            logger.debug("DWR call %s.%s batchId=%d", script, method, self._batch_id)
            http_request = self._http_client.build_request("POST", url, content=params.encode())
            response = self._http_client.send(http_request, stream=True)

            self._batch_id += 1
            return response
