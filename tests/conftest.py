import random
import sys

import pytest

# Ensure project root is importable (so `import aviary` and `import cli` work without installing)
import os as _os
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from aviary.api_models import BirdRecord, Thumbnail  # noqa: E402


@pytest.fixture
def birds():
    return (
        BirdRecord(title="Robin", thumbnail=Thumbnail(source="http://img/robin.jpg"), extract_html="<p>Robin</p>"),
        BirdRecord(title="Wren", thumbnail=Thumbnail(source="http://img/wren.jpg"), extract_html="<p>Wren</p>"),
        BirdRecord(title="Jay", thumbnail=Thumbnail(source="http://img/jay.jpg"), extract_html="<p>Jay</p>"),
    )


@pytest.fixture
def sleeps():
    """Async sleep stand-in that records the requested delays."""
    calls = []

    async def fake_sleep(seconds):
        calls.append(seconds)

    fake_sleep.calls = calls
    return fake_sleep


@pytest.fixture
def rng():
    return random.Random(1234)
