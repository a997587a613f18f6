"""Minimal editing of `project.pbxproj` build settings.

Only `buildSettings = { ... };` blocks whose PRODUCT_BUNDLE_IDENTIFIER
matches the app are touched; every other byte of the file is preserved.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from pathlib import Path

from ship.core.result import Err, Ok, Result
from ship.pipeline.errors import StageError
from ship.platform.files import atomic_write_text

__all__ = [
    "automatic_signing",
    "manual_signing",
    "read_setting",
    "update_build_settings",
    "update_project_file",
]

_BLOCK = re.compile(r"(?P<head>buildSettings = \{\n)(?P<body>.*?)(?P<tail>\n(?P<indent>[ \t]*)\};)", re.DOTALL)
_SAFE_VALUE = re.compile(r"^[A-Za-z0-9_.$/()-]+$")


def _quote(value: str) -> str:
    if _SAFE_VALUE.match(value):
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    return value


def _key_line(key: str) -> re.Pattern[str]:
    # Matches `KEY = v;`, `"KEY[sdk=iphoneos*]" = v;` and similar variants.
    return re.compile(
        rf'^[ \t]*"?{re.escape(key)}(?:\[[^\]]*\])?"?[ \t]*=[ \t]*(?P<value>.*?);[ \t]*$',
        re.MULTILINE,
    )


def _block_bundle_id(body: str) -> str | None:
    m = _key_line("PRODUCT_BUNDLE_IDENTIFIER").search(body)
    return _unquote(m.group("value")) if m else None


def read_setting(pbxproj: str, *, bundle_id: str, key: str) -> str | None:
    """Return the first value of `key` in a block building `bundle_id`."""
    for block in _BLOCK.finditer(pbxproj):
        body = block.group("body")
        if _block_bundle_id(body) != bundle_id:
            continue
        m = _key_line(key).search(body)
        if m:
            return _unquote(m.group("value"))
    return None


def update_build_settings(
    pbxproj: str,
    *,
    bundle_id: str,
    settings: Mapping[str, str | None],
) -> tuple[str, int]:
    """Apply settings to every block building `bundle_id`.

    A None value removes the key (including SDK-qualified variants).

    Returns:
        (new text, number of blocks updated)
    """
    updated = 0

    def rewrite(block: re.Match[str]) -> str:
        nonlocal updated
        body = block.group("body")
        if _block_bundle_id(body) != bundle_id:
            return block.group(0)

        indent = block.group("indent") + "\t"
        for key, value in settings.items():
            body = _key_line(key).sub("", body).strip("\n")
            if value is not None:
                body = f"{indent}{key} = {_quote(value)};\n{body}"
        lines = [line for line in body.split("\n") if line.strip()]
        updated += 1
        return f"{block.group('head')}{chr(10).join(lines)}{block.group('tail')}"

    return _BLOCK.sub(rewrite, pbxproj), updated


def automatic_signing(team_id: str) -> dict[str, str | None]:
    return {
        "CODE_SIGN_STYLE": "Automatic",
        "DEVELOPMENT_TEAM": team_id,
        "CODE_SIGN_IDENTITY": None,
        "PROVISIONING_PROFILE_SPECIFIER": None,
        "PROVISIONING_PROFILE": None,
    }


def manual_signing(*, team_id: str, identity_name: str, profile_name: str) -> dict[str, str | None]:
    return {
        "CODE_SIGN_STYLE": "Manual",
        "DEVELOPMENT_TEAM": team_id,
        "CODE_SIGN_IDENTITY": identity_name,
        "PROVISIONING_PROFILE_SPECIFIER": profile_name,
    }


def update_project_file(
    project_path: Path,
    *,
    bundle_id: str,
    settings: Mapping[str, str | None],
) -> Result[int, StageError]:
    pbxproj = project_path / "project.pbxproj"
    try:
        text = pbxproj.read_text(encoding="utf-8")
    except OSError as e:
        return Err(StageError(kind="build", message=f"cannot read project file: {e}", hint=str(pbxproj)))

    new_text, updated = update_build_settings(text, bundle_id=bundle_id, settings=settings)
    if updated == 0:
        return Err(
            StageError(
                kind="build",
                message=f"no build configuration produces {bundle_id}",
                hint=f"check PRODUCT_BUNDLE_IDENTIFIER in {pbxproj}",
            )
        )
    if new_text != text:
        try:
            atomic_write_text(pbxproj, new_text)
        except OSError as e:
            return Err(StageError(kind="build", message=f"cannot write project file: {e}", hint=str(pbxproj)))
    return Ok(updated)
