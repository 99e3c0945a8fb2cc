"""
Registration client: one-shot handshake with the control plane.

Sends the identity's public nkey (plus optional component data) and
receives the user JWT, account, server URL and optional component config
needed to join the bus. Never retried here; callers wrap it if they want that.
"""
from __future__ import annotations

import json
import logging
import threading
from collections.abc import MutableMapping
from dataclasses import asdict, dataclass, fields, is_dataclass
from typing import Any, Callable, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from platform_component import keys
from platform_component.config import package_version
from platform_component.errors import (
    DecodeError,
    EncodeError,
    RegistrationRejectedError,
    RegistrationRequestError,
)

logger = logging.getLogger(__name__)

DEFAULT_URL = "https://cloud.synadia.com"
CONNECT_PATH = "api/core/beta/platform-components/connect"
REQUEST_TIMEOUT_S = 2.0

HeartbeatFunction = Callable[[], str]


class RawJSON:
    """
    Encoded JSON kept opaque until a caller asks for it.

    The shape belongs to the component type, not to this package.
    """

    __slots__ = ("_raw",)

    def __init__(self, raw: bytes | str) -> None:
        if isinstance(raw, str):
            raw = raw.encode("utf-8")
        self._raw = bytes(raw)

    @classmethod
    def encode(cls, value: Any) -> "RawJSON":
        if is_dataclass(value) and not isinstance(value, type):
            value = asdict(value)
        try:
            return cls(json.dumps(value, separators=(",", ":")))
        except (TypeError, ValueError) as exc:
            raise EncodeError(f"failed to marshal request data: {exc}") from exc

    def __bytes__(self) -> bytes:
        return self._raw

    def __eq__(self, other: object) -> bool:
        if isinstance(other, RawJSON):
            return self._raw == other._raw
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._raw)

    def __repr__(self) -> str:
        return f"RawJSON({self._raw!r})"

    def loads(self, *, stage: str = "config") -> Any:
        try:
            return json.loads(self._raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise DecodeError(stage, str(exc)) from exc

    def decode_into(self, destination: Any) -> Any:
        """
        Decode into a mutable mapping (updated in place) or a dataclass
        instance (fields matched case-insensitively, unknown keys ignored).
        """
        value = self.loads()
        if not isinstance(value, dict):
            raise DecodeError("config", f"expected a JSON object, got {type(value).__name__}")

        if isinstance(destination, MutableMapping):
            destination.update(value)
            return destination

        if is_dataclass(destination) and not isinstance(destination, type):
            if destination.__dataclass_params__.frozen:
                raise DecodeError("config", f"{type(destination).__name__} is frozen")
            by_name = {f.name.lower(): f.name for f in fields(destination)}
            updates = {}
            for key, item in value.items():
                name = by_name.get(key.lower()) if isinstance(key, str) else None
                if name is not None:
                    updates[name] = item
            for name, item in updates.items():
                setattr(destination, name, item)
            return destination

        raise DecodeError("config", f"unsupported destination {type(destination).__name__}")


def _check_destination(config: Any) -> None:
    if config is None or isinstance(config, MutableMapping):
        return
    if is_dataclass(config) and not isinstance(config, type):
        return
    raise TypeError("config destination must be a mutable mapping or a dataclass instance")


@dataclass(frozen=True, slots=True)
class RegisterOptions:
    token: str
    url: str = DEFAULT_URL
    data: Optional[RawJSON] = None
    config: Any = None
    heartbeat: Optional[HeartbeatFunction] = None

    @classmethod
    def build(
        cls,
        token: str,
        *,
        url: Optional[str] = None,
        data: Any = None,
        config: Any = None,
        heartbeat: Optional[HeartbeatFunction] = None,
    ) -> "RegisterOptions":
        """
        Assemble options once, before the handshake.

        data is JSON-encoded here (dicts, lists, dataclasses or a RawJSON);
        config is the destination for the component config in the reply.
        """
        if heartbeat is not None and not callable(heartbeat):
            raise TypeError("heartbeat must be callable")
        _check_destination(config)
        raw = None
        if data is not None:
            raw = data if isinstance(data, RawJSON) else RawJSON.encode(data)
        return cls(
            token=token,
            url=(url or DEFAULT_URL).rstrip("/"),
            data=raw,
            config=config,
            heartbeat=heartbeat,
        )

    @property
    def connect_url(self) -> str:
        return f"{self.url}/{CONNECT_PATH}"


@dataclass(frozen=True, slots=True)
class ConnectRequest:
    nkey_public: str
    data: Optional[RawJSON] = None

    def to_json(self) -> bytes:
        """Envelope with data spliced in byte for byte (it is only validated)."""
        out = b'{"nkey_public":' + json.dumps(self.nkey_public).encode("utf-8")
        if self.data is not None:
            self.data.loads(stage="request")
            out += b',"data":' + bytes(self.data).strip()
        return out + b"}"


@dataclass(frozen=True, slots=True)
class ConnectResponse:
    jwt: str
    account: str
    server: str
    config: Optional[RawJSON] = None

    @classmethod
    def from_json(cls, body: bytes) -> "ConnectResponse":
        try:
            text = body.decode("utf-8")
            obj = json.loads(text)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise DecodeError("response", f"unmarshal response failed: {exc}") from exc
        if not isinstance(obj, dict):
            raise DecodeError("response", "expected a JSON object")

        values: dict[str, str] = {}
        for key in ("jwt", "account", "server"):
            v = obj.get(key)
            if v is None:
                v = ""
            if not isinstance(v, str):
                raise DecodeError("response", f"{key} must be a string")
            values[key] = v

        # null config is the same as no config; otherwise keep its source bytes
        config = None
        if obj.get("config") is not None:
            config = RawJSON(_raw_members(text)["config"])
        return cls(config=config, **values)


def _skip_ws(text: str, i: int) -> int:
    while i < len(text) and text[i] in " \t\n\r":
        i += 1
    return i


def _raw_members(text: str) -> dict[str, str]:
    """
    Top-level members of an already validated JSON object, each value kept
    as its source text. A repeated key keeps its last value, as json.loads does.
    """
    decoder = json.JSONDecoder()
    members: dict[str, str] = {}
    i = _skip_ws(text, _skip_ws(text, 0) + 1)  # past "{"
    while i < len(text) and text[i] == '"':
        key, i = decoder.raw_decode(text, i)
        i = _skip_ws(text, _skip_ws(text, i) + 1)  # past ":"
        _, end = decoder.raw_decode(text, i)
        members[key] = text[i:end]
        i = _skip_ws(text, end)
        if i < len(text) and text[i] == ",":
            i = _skip_ws(text, i + 1)
    return members


def _post(url: str, body: bytes, *, token: str, timeout_s: float) -> bytes:
    req = Request(
        url,
        data=body,
        method="POST",
        headers={
            "Authorization": f"bearer {token}",
            "Content-Type": "application/json",
            "User-Agent": f"platform-component/{package_version()}",
        },
    )
    try:
        with urlopen(req, timeout=timeout_s) as resp:
            status = resp.status
            reason = resp.reason
            payload = resp.read()
    except HTTPError as exc:
        text = exc.read().decode("utf-8", errors="replace")
        raise RegistrationRejectedError(exc.code, exc.reason, text) from exc
    except (URLError, OSError) as exc:
        raise RegistrationRequestError(f"register request failed: {exc}") from exc

    if status != 200:
        raise RegistrationRejectedError(status, reason, payload.decode("utf-8", errors="replace"))
    return payload


def _post_within(url: str, body: bytes, *, token: str, timeout_s: float) -> bytes:
    """
    _post with timeout_s bounding the whole exchange.

    urlopen's timeout applies per socket operation, so a server trickling
    its reply could hold the caller far longer. The request runs on a daemon
    thread which is abandoned at the deadline.
    """
    result: dict[str, Any] = {}

    def _run() -> None:
        try:
            result["payload"] = _post(url, body, token=token, timeout_s=timeout_s)
        except Exception as exc:
            result["error"] = exc

    worker = threading.Thread(target=_run, name="pc-register", daemon=True)
    worker.start()
    worker.join(timeout_s)
    if worker.is_alive():
        raise RegistrationRequestError(f"register request failed: no complete response within {timeout_s}s")
    if "error" in result:
        raise result["error"]
    return result["payload"]


def register(
    options: RegisterOptions,
    *,
    log: logging.Logger = logger,
    timeout_s: float = REQUEST_TIMEOUT_S,
) -> tuple[keys.Identity, ConnectResponse]:
    """
    Run the handshake with a brand-new user identity.

    Returns the identity and the decoded response. The component config, if
    any, is decoded into options.config when a destination was given.
    """
    identity = keys.generate(keys.ROLE_USER)
    request = ConnectRequest(nkey_public=identity.public, data=options.data)

    log.info("connecting to platform server=%s user=%s", options.url, identity.public)
    body = _post_within(options.connect_url, request.to_json(), token=options.token, timeout_s=timeout_s)

    response = ConnectResponse.from_json(body)
    log.info("register request success")

    if response.config is not None:
        if options.config is None:
            log.warning("control plane returned config data but no destination supplied")
        else:
            response.config.decode_into(options.config)

    return identity, response
