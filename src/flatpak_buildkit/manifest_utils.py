"""Manifest discovery, parsing and validation.

Manifests are JSON (comments allowed, as json-glib accepts them) or YAML.
Uses jsonschema for Draft-07 validation, PyYAML for YAML reading.
"""

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import jsonschema
import yaml

from flatpak_buildkit.constants import (
    MANIFEST_EXCLUDED_DIRS,
    MANIFEST_SEARCH_LIMIT,
    MANIFEST_SUFFIXES,
)
from flatpak_buildkit.manifest import Manifest, ManifestError
from flatpak_buildkit.tooling import HostTools


logger = logging.getLogger(__name__)


# --- Schema ---

MANIFEST_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "anyOf": [
        {"required": ["id"]},
        {"required": ["app-id"]},
    ],
    "required": ["modules"],
    "properties": {
        "id": {"type": "string"},
        "app-id": {"type": "string"},
        "runtime": {"type": "string"},
        "runtime-version": {"type": ["string", "number"]},
        "sdk": {"type": "string"},
        "command": {"type": "string"},
        "sdk-extensions": {"type": "array", "items": {"type": "string"}},
        "finish-args": {"type": "array", "items": {"type": "string"}},
        "x-run-args": {"type": "array", "items": {"type": "string"}},
        "build-options": {"type": "object"},
        "modules": {
            "type": "array",
            "items": {
                "oneOf": [
                    {"type": "string"},
                    {
                        "type": "object",
                        "required": ["name"],
                        "properties": {
                            "name": {"type": "string"},
                            "buildsystem": {"type": "string"},
                            "config-opts": {"type": "array", "items": {"type": "string"}},
                            "build-commands": {"type": "array", "items": {"type": "string"}},
                            "post-install": {"type": "array", "items": {"type": "string"}},
                            "build-options": {"type": "object"},
                        },
                    },
                ],
            },
        },
    },
}

# Strings are matched first so comment markers inside them survive
_JSON_COMMENT_RE = re.compile(r'("(?:\\.|[^"\\])*")|//[^\n]*|/\*.*?\*/', re.DOTALL)


def _strip_json_comments(text: str) -> str:
    return _JSON_COMMENT_RE.sub(lambda m: m.group(1) or "", text)


def validate_manifest_data(data: Any, filename: str = "manifest") -> List[str]:
    """
    Validate parsed manifest data, return ALL errors (not just first).

    Uses Draft7Validator.iter_errors() to collect all validation errors.
    """
    errors = []
    validator = jsonschema.Draft7Validator(MANIFEST_SCHEMA)
    for error in validator.iter_errors(data):
        path = ".".join(str(p) for p in error.absolute_path) if error.absolute_path else "(root)"
        errors.append(f"{filename}: {error.message} at {path}")
    return errors


# --- DBus names ---

def _is_valid_dbus_name_character(char: str) -> bool:
    return char.isascii() and (char.isalnum() or char in "_-")


def is_valid_dbus_name(name: str) -> bool:
    """
    Check if a DBus name follows the DBus specification.

    At least two non-empty elements separated by periods, 255 characters at
    most, no element starting with a digit, only [A-Za-z0-9_-] allowed.
    """
    if len(name) == 0 or len(name) > 255:
        return False

    elements = name.split(".")
    if len(elements) < 2:
        return False

    for element in elements:
        if not element:
            return False
        if element[0].isdigit():
            return False
        if not all(_is_valid_dbus_name_character(c) for c in element):
            return False
    return True


# --- Parsing ---

def load_manifest_data(path: Path) -> Any:
    """
    Read and deserialize a manifest file.

    Raises:
        ManifestError: If the file cannot be read or parsed.
    """
    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ManifestError(f"Cannot read {path}: {e}") from e

    if path.suffix == ".json":
        try:
            return json.loads(_strip_json_comments(content))
        except json.JSONDecodeError as e:
            raise ManifestError(
                f"JSON parse error in {path} at line {e.lineno}, column {e.colno}: {e.msg}"
            ) from e

    try:
        return yaml.safe_load(content)
    except yaml.YAMLError as e:
        if hasattr(e, "problem_mark") and e.problem_mark:
            mark = e.problem_mark
            detail = f"YAML parse error in {path} at line {mark.line + 1}, column {mark.column + 1}: {e.problem or 'syntax error'}"
        else:
            detail = f"YAML parse error in {path}: {e}"
        raise ManifestError(detail) from e


def parse_manifest(
    path: Path,
    workspace: Path,
    tools: Optional[HostTools] = None,
) -> Optional[Manifest]:
    """
    Parse a potential manifest. The file stem must be a valid application ID.

    Returns:
        A Manifest, or None if the file is not a Flatpak manifest.

    Raises:
        ManifestError: If the file looks like a manifest but cannot be parsed.
    """
    path = Path(path)
    logger.debug("Trying to parse potential Flatpak manifest %s", path)
    if not is_valid_dbus_name(path.stem):
        return None

    data = load_manifest_data(path)
    if data is None:
        return None

    errors = validate_manifest_data(data, path.name)
    if errors:
        logger.debug("Not a valid manifest %s: %s", path, "; ".join(errors))
        return None

    return Manifest(path, data, workspace, tools)


def find_manifests(
    workspace: Path,
    tools: Optional[HostTools] = None,
    limit: int = MANIFEST_SEARCH_LIMIT,
) -> Dict[Path, Manifest]:
    """
    Find and parse every manifest under the workspace.

    Build directories and VCS metadata are skipped. Files that fail to
    parse are logged and left out.

    Returns:
        Manifests keyed by resolved path, in path order.
    """
    workspace = Path(workspace)
    candidates: List[Path] = []
    for root, dirs, files in os.walk(workspace):
        dirs[:] = sorted(d for d in dirs if d not in MANIFEST_EXCLUDED_DIRS)
        for name in sorted(files):
            if name.endswith(MANIFEST_SUFFIXES):
                candidates.append(Path(root) / name)
                if len(candidates) >= limit:
                    break
        if len(candidates) >= limit:
            logger.warning("Stopped looking for manifests after %d candidates", limit)
            break

    manifests: Dict[Path, Manifest] = {}
    for candidate in candidates:
        try:
            manifest = parse_manifest(candidate, workspace, tools)
        except ManifestError as e:
            logger.warning("Failed to parse the manifest at %s: %s", candidate, e)
            continue
        if manifest is not None:
            manifests[manifest.path] = manifest
    return manifests


def check_for_missing_runtimes(manifest: Manifest) -> List[str]:
    """
    Runtimes, SDKs and SDK extensions the manifest needs that are not installed.

    Runtime and SDK are reported as `<id>//<runtime-version>`.
    """
    runtime_version = str(manifest.data.get("runtime-version", ""))
    missing_runtimes = [r for r in (manifest.data.get("runtime"), manifest.data.get("sdk")) if r]
    missing_runtimes = list(dict.fromkeys(missing_runtimes))
    missing_extensions = list(dict.fromkeys(manifest.data.get("sdk-extensions") or []))

    for runtime_id, branch in manifest.tools.installed_runtimes.get():
        if branch == runtime_version and runtime_id in missing_runtimes:
            missing_runtimes.remove(runtime_id)
            continue
        # Extension branches follow the SDK's own scheme, so only the ID is compared
        if runtime_id in missing_extensions:
            missing_extensions.remove(runtime_id)

    return missing_extensions + [f"{r}//{runtime_version}" for r in missing_runtimes]
