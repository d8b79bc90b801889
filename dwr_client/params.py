"""Params - Builds and serializes DWR call parameters.

A DWR plain call is a POST whose body is one ``key=value`` line per
parameter. Five keys are mandated by the protocol; base parameters and
per-call extras are layered over them.

See DESIGN.md "Request Encoder" for the precedence rules.
"""

from __future__ import annotations

from typing import Mapping

# Protocol-mandated keys, always present in a plain call body.
PAGE_KEY = "page"
BATCH_ID_KEY = "batchId"
SCRIPT_SESSION_ID_KEY = "scriptSessionId"
SCRIPT_NAME_KEY = "c0-scriptName"
METHOD_NAME_KEY = "c0-methodName"

CALL_PATH_TEMPLATE = "/dwr/call/plaincall/{script}.{method}.dwr"


class Params(dict[str, str]):
    """Mapping of DWR parameter names to string values.

    Iteration order is whatever the underlying dict yields. The server does
    not care about line order, so nothing here sorts.
    """

    def encode(self) -> str:
        """Serialize to the plain-call body: one ``key=value\\n`` line per entry."""
        return "".join(f"{key}={value}\n" for key, value in self.items())

    def __str__(self) -> str:
        return self.encode()


def encode_page(page: str) -> str:
    """Percent-encode path separators in the page value.

    Only ``/`` is touched; everything else is passed through verbatim.
    """
    return page.replace("/", "%2F")


def call_path(script: str, method: str) -> str:
    """Return the plain-call path for ``script.method``."""
    return CALL_PATH_TEMPLATE.format(script=script, method=method)


def mandated_params(
    page: str,
    batch_id: int,
    script_session_id: str,
    script: str,
    method: str,
) -> Params:
    """Build the parameter set every plain call must carry."""
    return Params(
        {
            PAGE_KEY: encode_page(page),
            BATCH_ID_KEY: str(batch_id),
            SCRIPT_SESSION_ID_KEY: script_session_id,
            SCRIPT_NAME_KEY: script,
            METHOD_NAME_KEY: method,
        }
    )


def merge_params(base: Params, *layers: Mapping[str, str] | None) -> Params:
    """Overlay each layer onto a copy of ``base``, later layers winning.

    Colliding keys are overwritten without any diagnostic. ``None`` layers
    are skipped so callers can pass optional mappings straight through.

    Args:
        base: Lowest-precedence parameters (normally the mandated set).
        *layers: Mappings applied in increasing precedence.

    Returns:
        A new Params; ``base`` and the layers are left untouched.
    """
    merged = Params(base)
    for layer in layers:
        if layer:
            merged.update(layer)
    return merged

