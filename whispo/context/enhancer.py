import logging
import re
from typing import List, Tuple

from whispo.context.snapshot import ContextSnapshot

logger = logging.getLogger("Whispo.context.enhancer")


class GlossaryEnhancer:
    """Default enhancer: applies the snapshot's glossary to the transcript.

    Phrases match whole words, case-insensitively. Longer phrases are tried
    first so "pie torch lightning" wins over "pie torch".
    """

    def enhance(self, transcript: str, snapshot: ContextSnapshot) -> str:
        if not transcript or not snapshot.glossary:
            return transcript
        patterns = self._compile(snapshot)
        for pattern, replacement in patterns:
            transcript = pattern.sub(lambda _match, text=replacement: text, transcript)
        return transcript

    @staticmethod
    def _compile(snapshot: ContextSnapshot) -> List[Tuple["re.Pattern[str]", str]]:
        entries = sorted(
            (entry for entry in snapshot.glossary if entry.phrase.strip()),
            key=lambda entry: len(entry.phrase),
            reverse=True,
        )
        compiled = []
        for entry in entries:
            phrase = re.escape(entry.phrase.strip())
            compiled.append((re.compile(rf"(?<!\w){phrase}(?!\w)", re.IGNORECASE), entry.replacement))
        logger.debug("Applying %d glossary entries", len(compiled))
        return compiled
