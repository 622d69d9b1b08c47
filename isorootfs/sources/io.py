"""Source descriptor loading.

Descriptors are YAML or JSON mappings validated against
``SourceDescriptor``.
"""

import json
from pathlib import Path
from typing import Any

import yaml

from isorootfs.sources.schema import SourceDescriptor


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Args:
        path: Path to the JSON file.

    Returns:
        Parsed JSON content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def load_descriptor(path: Path) -> SourceDescriptor:
    """Load and validate a source descriptor from a YAML or JSON file.

    The format is chosen by file extension; anything other than ``.json``
    is parsed as YAML.

    Args:
        path: Path to the descriptor file.

    Returns:
        Validated SourceDescriptor instance.

    Raises:
        FileNotFoundError: If the file does not exist.
        pydantic.ValidationError: If data does not match schema.
        ValueError: If the content is not a mapping.
    """
    if path.suffix.lower() == ".json":
        data = load_json(path)
    else:
        data = load_yaml(path)
    return SourceDescriptor.model_validate(data)


def descriptor_to_yaml_string(descriptor: SourceDescriptor) -> str:
    """Render a descriptor as YAML, omitting unset optional fields."""
    data = descriptor.model_dump(exclude_none=True)
    return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)


__all__ = [
    "descriptor_to_yaml_string",
    "load_descriptor",
    "load_json",
    "load_yaml",
]
