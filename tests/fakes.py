"""Summary: In-process fakes shared by the test modules.

Importance: Keeps scripted test doubles out of the installed package.
Alternatives: Patch urllib in every test.
"""

from __future__ import annotations

import threading

from flowhub.ai import AiProvider
from flowhub.errors import AiProviderError


class ScriptedAiProvider(AiProvider):
    """Summary: Replays a fixed sequence of responses or errors; the last step repeats.

    Importance: Lets tests exercise retry, backoff, and schema validation paths.
    Alternatives: Use a mocking library with side_effect lists.
    """

    name = "scripted"
    model = "scripted"

    def __init__(self, script: list[str | Exception]) -> None:
        self._script = list(script)
        self._lock = threading.Lock()
        self.prompts: list[str] = []

    @property
    def calls(self) -> int:
        return len(self.prompts)

    def generate_text(self, prompt: str, purpose: str) -> tuple[str, int]:
        with self._lock:
            self.prompts.append(prompt)
            if not self._script:
                raise AiProviderError("Script exhausted")
            step = self._script.pop(0) if len(self._script) > 1 else self._script[0]
        if isinstance(step, Exception):
            raise step
        return step, 1
