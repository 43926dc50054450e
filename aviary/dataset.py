from __future__ import annotations

from importlib import resources

from pydantic import TypeAdapter, ValidationError

from .api_models import BirdRecord
from .settings import SUPPORTED_VERSIONS

DATASET_FILES = {
    "v1": "birds.json",
    "v2": "canaries.json",
}

_records_adapter = TypeAdapter(list[BirdRecord])


class DatasetError(Exception):
    pass


def parse_birds(raw: bytes | str, name: str) -> tuple[BirdRecord, ...]:
    """Parse a JSON array of bird objects.

    The datasets are fixed at build time, so a parse error means the package
    is broken and the service must not start.
    """
    try:
        records = _records_adapter.validate_json(raw)
    except ValidationError as e:
        raise DatasetError(f"unable to parse {name}: {e}") from e
    if not records:
        raise DatasetError(f"unable to parse {name}: dataset is empty")
    return tuple(records)


def read_resource(name: str) -> bytes:
    return (resources.files(__package__) / "data" / name).read_bytes()


def load_dataset(version: str) -> tuple[BirdRecord, ...]:
    """Return the records served for a version tag (v1 canonical, v2 canary)."""
    if version not in SUPPORTED_VERSIONS:
        raise ValueError(f"Unsupported version {version!r}; only v1 and v2 are supported.")
    name = DATASET_FILES[version]
    return parse_birds(read_resource(name), name)
