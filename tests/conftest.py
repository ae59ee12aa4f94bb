from __future__ import annotations

import os

import pytest

# Set env before any manifest_billing imports (settings are created at import time).
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("CHUNK_YIELD_SECONDS", "0")
os.environ.setdefault("GEMINI_API_KEY", "test-key")


@pytest.fixture(autouse=True)
def _reset_singletons() -> None:
    import manifest_billing.core.storage as storage_mod
    import manifest_billing.modules.capture.service as capture_mod
    import manifest_billing.modules.imports.service as imports_mod
    import manifest_billing.modules.manifests.service as manifests_mod
    import manifest_billing.modules.recognition.service as recognition_mod

    storage_mod._storage = None
    manifests_mod._repository = None
    imports_mod._import_service = None
    capture_mod._capture_service = None
    recognition_mod._recognizer = None

    yield


class ScriptedRecognizer:
    """Replays a fixed list of outcomes; an Exception entry fails that call."""

    def __init__(self, outcomes: list):
        self.outcomes = list(outcomes)
        self.calls: list[str] = []

    async def recognize(self, images, instruction, tier):
        from manifest_billing.core.errors import RecognitionFailure
        from manifest_billing.modules.recognition.schemas import RecognitionResult

        self.calls.append(tier.value)
        if not self.outcomes:
            raise RecognitionFailure("no scripted outcome left")
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return RecognitionResult.model_validate(outcome)


@pytest.fixture()
def scripted_recognizer():
    return ScriptedRecognizer


@pytest.fixture()
def repo():
    from manifest_billing.core.storage import MemoryBlobStore
    from manifest_billing.modules.manifests.service import ManifestRepository

    r = ManifestRepository(MemoryBlobStore())
    r.load()
    return r
