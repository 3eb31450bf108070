"""Registry of receiver protocols and construction from option dicts."""

from __future__ import annotations

import abc
import dataclasses
import threading
from typing import Any, Callable

from carbond.points import Points


class Receiver(abc.ABC):
    """Something that accepts points from the network and hands them on."""

    @abc.abstractmethod
    def stop(self) -> None:
        """Stop receiving and release resources."""

    @abc.abstractmethod
    def stat(self, send: Callable[[str, float], None]) -> None:
        """Report internal counters."""


_protocols: dict[str, tuple[Callable[[], Any], Callable[..., Any]]] = {}
_protocols_lock = threading.Lock()


def register(
    protocol: str,
    new_options: Callable[[], Any],
    new_receiver: Callable[[str, Any, Callable[[Points], None]], Any],
) -> None:
    """Register a protocol; registering the same name twice is an error."""
    with _protocols_lock:
        if protocol in _protocols:
            raise ValueError(f"protocol {protocol!r} already registered")
        _protocols[protocol] = (new_options, new_receiver)


def _option_key(name: str) -> str:
    return name.replace("_", "-")


def with_protocol(options: Any, protocol: str) -> dict[str, Any]:
    """Turn an options dataclass into a config dict with a ``protocol`` key."""
    result = {
        _option_key(f.name): getattr(options, f.name) for f in dataclasses.fields(options)
    }
    result["protocol"] = protocol
    return result


def _apply(options: Any, opts: dict[str, Any]) -> None:
    names = {_option_key(f.name): f.name for f in dataclasses.fields(options)}
    for key, value in opts.items():
        attr = names.get(key)
        if attr is None:
            continue
        current = getattr(options, attr)
        if current is not None:
            if isinstance(current, bool) != isinstance(value, bool):
                raise TypeError(f"bad type for option {key!r}: {value!r}")
            ok = isinstance(value, type(current)) or (
                isinstance(current, float) and isinstance(value, int)
            )
            if not ok:
                raise TypeError(f"bad type for option {key!r}: {value!r}")
        setattr(options, attr, value)


def new(name: str, opts: dict[str, Any], store: Callable[[Points], None]) -> Any:
    """Build a receiver from ``opts``, whose ``protocol`` key picks the kind."""
    if "protocol" not in opts:
        raise ValueError(f"protocol unspecified for receiver {name!r}")
    protocol_name = opts["protocol"]
    if not isinstance(protocol_name, str):
        raise ValueError(f"bad protocol option {protocol_name!r}")

    with _protocols_lock:
        record = _protocols.get(protocol_name)
    if record is None:
        raise ValueError(f"unknown protocol {protocol_name!r}")

    new_options, new_receiver = record
    options = new_options()
    _apply(options, {k: v for k, v in opts.items() if k != "protocol"})
    return new_receiver(name, options, store)