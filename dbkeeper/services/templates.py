from __future__ import annotations

from string import Formatter
from typing import Any, Mapping

from dbkeeper.core.errors import TemplateError


# Placeholders known before a run starts; anything else depends on the run time.
_STATIC_PLACEHOLDERS = frozenset({"cluster", "database"})


def render_template(template: str, values: Mapping[str, Any]) -> str:
    # Use str.format placeholders so operators can write "{cluster}/{database}/{year}".
    try:
        return template.format_map(dict(values))
    except KeyError as exc:
        raise TemplateError(f"unknown placeholder {exc.args[0]!r} in template {template!r}") from exc
    except (IndexError, ValueError) as exc:
        raise TemplateError(f"invalid template {template!r}: {exc}") from exc


def _parse(path_template: str) -> list[tuple[str, str | None, str | None, str | None]]:
    try:
        return list(Formatter().parse(path_template))
    except ValueError as exc:
        raise TemplateError(f"invalid template {path_template!r}: {exc}") from exc


def storage_prefix(path_template: str, cluster: str, database: str) -> str:
    """Return the listing prefix shared by every object written with ``path_template``.

    Rendering stops at the first run-dependent placeholder (year, timestamp, ...),
    so a template such as ``{cluster}/{database}/{year}`` lists ``c/db/``.
    A fully static template gets a trailing slash so ``c/db`` does not match ``c/db2``.
    """
    values = {"cluster": cluster, "database": database}
    prefix = []
    for literal, field_name, _spec, _conversion in _parse(path_template):
        prefix.append(literal)
        if field_name is None:
            continue
        if field_name not in _STATIC_PLACEHOLDERS:
            return "".join(prefix)
        prefix.append(values[field_name])
    rendered = "".join(prefix)
    if rendered and not rendered.endswith("/"):
        rendered += "/"
    return rendered


def prefix_is_scoped(path_template: str) -> bool:
    # Both names must render before any run-dependent placeholder cuts the prefix.
    seen = set()
    for _literal, field_name, _spec, _conversion in _parse(path_template):
        if field_name is None:
            continue
        if field_name not in _STATIC_PLACEHOLDERS:
            break
        seen.add(field_name)
    return seen == _STATIC_PLACEHOLDERS


def format_duration(seconds: float) -> str:
    total = max(0, int(round(seconds)))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"
