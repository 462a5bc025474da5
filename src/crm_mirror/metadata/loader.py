"""Load module metadata from a JSON file.

The file holds either a list of modules or an object keyed by module name:

    [{"module": "Contacts", "plural_name": "Contacts", "fields": [...]}]
"""

from __future__ import annotations

import json
from pathlib import Path

from pydantic import ValidationError

from src.crm_mirror.core.errors import MirrorError
from src.crm_mirror.metadata.fields import ModuleMetadata


def load_modules(path: str | Path) -> dict[str, ModuleMetadata]:
    """Return module metadata keyed by remote module name."""
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise MirrorError(f"Cannot read module metadata from {path}: {exc}") from exc
    if isinstance(raw, dict):
        entries = [{"module": name, **body} for name, body in raw.items()]
    else:
        entries = raw

    modules: dict[str, ModuleMetadata] = {}
    for entry in entries:
        try:
            module = ModuleMetadata.model_validate(entry)
        except ValidationError as exc:
            raise MirrorError(f"Invalid module metadata in {path}: {exc}") from exc
        modules[module.module] = module
    return modules
