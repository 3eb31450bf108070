"""Reader for the simple ini files used by storage configuration."""

from __future__ import annotations

from pathlib import Path


class IniError(ValueError):
    """A syntax error in an ini file, with the 1-based line number."""

    def __init__(self, line: int, message: str) -> None:
        super().__init__(f"line {line}: {message}")
        self.line = line


def parse_ini_file(filename: str) -> list[dict[str, str]]:
    """Parse ``filename`` into a list of sections, in file order.

    Each section is a dict of lower-cased keys to values, with the section
    name stored under ``"name"``. Values lose surrounding quotes.
    """
    body = Path(filename).read_bytes().decode("utf-8", "surrogateescape")

    config: list[dict[str, str]] = []
    section: dict[str, str] | None = None

    for number, raw in enumerate(body.split("\n"), start=1):
        line = raw.strip()
        if not line or line[0] in ";#":
            continue

        if line[0] == "[":
            if line[-1] != "]":
                raise IniError(number, "unfinished section name")
            name = line[1:-1].strip()
            if not name:
                raise IniError(number, "empty section name")
            if section is not None:
                config.append(section)
            section = {"name": name}
            continue

        if section is None:
            raise IniError(number, "config section not found")

        key, sep, value = line.partition("=")
        if not sep:
            raise IniError(number, "key = value not found")
        key = key.strip().lower()
        if not key:
            raise IniError(number, "key is empty")
        section[key] = value.strip().strip("\"'")

    if section is not None:
        config.append(section)

    return config