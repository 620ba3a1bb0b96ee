"""Speaker-turn segmentation of finalized recognition words."""

from __future__ import annotations

import logging
from typing import Iterable, Sequence

from common.schemas import FinalizedSentence, TranscriptBatch, WordEvent

logger = logging.getLogger(__name__)


def speaker_label(speaker: int) -> str:
    return f"Speaker {speaker}"


def segment_words(
    words: Sequence[WordEvent],
    meeting_id: str,
    fold_tail_speaker_change: bool = False,
) -> list[FinalizedSentence]:
    """Group words into one sentence per contiguous run of the same speaker.

    Words are taken in arrival order; timestamps are never re-sorted, so a
    sentence's ``start``/``end`` are simply those of its first and last word.
    The speaker label is the only split signal.

    With ``fold_tail_speaker_change`` the last word of the buffer always closes
    the running turn, even when its speaker differs, so it ends up attributed
    to the previous speaker. Off by default; transcripts stored by earlier
    clients were segmented that way.
    """
    if not words:
        return []

    sentences: list[FinalizedSentence] = []
    last = len(words) - 1

    current_speaker = words[0].speaker
    parts: list[str] = []
    start = words[0].start
    end = words[0].end

    def close_turn() -> None:
        sentences.append(
            FinalizedSentence(
                speaker=speaker_label(current_speaker),
                transcript=" ".join(parts).strip(),
                start=start,
                end=end,
                meeting_id=meeting_id,
            )
        )

    for i, word in enumerate(words):
        if word.speaker != current_speaker and not (fold_tail_speaker_change and i == last):
            close_turn()
            current_speaker = word.speaker
            parts = [word.punctuated_word]
            start = word.start
            end = word.end
        else:
            parts.append(word.punctuated_word)
            end = word.end
        if i == last:
            close_turn()

    return sentences


class TranscriptAssembler:
    """Accumulates finalized words for one session and keeps its sentences current.

    Segmentation is recomputed over the whole buffer whenever a final batch
    arrives. Interim batches only replace the live caption.
    """

    def __init__(self, meeting_id: str, fold_tail_speaker_change: bool = False) -> None:
        self.meeting_id = meeting_id
        self.fold_tail_speaker_change = fold_tail_speaker_change
        self._words: list[WordEvent] = []
        self._sentences: list[FinalizedSentence] = []
        self._history: list[FinalizedSentence] = []
        self._caption = ""
        self._frozen = False

    @property
    def words(self) -> tuple[WordEvent, ...]:
        return tuple(self._words)

    @property
    def sentences(self) -> list[FinalizedSentence]:
        return list(self._sentences)

    @property
    def history(self) -> list[FinalizedSentence]:
        return list(self._history)

    @property
    def caption(self) -> str:
        return self._caption

    @property
    def frozen(self) -> bool:
        return self._frozen

    def load_history(self, sentences: Iterable[FinalizedSentence]) -> None:
        """Previously persisted sentences, shown ahead of the live ones but never re-segmented."""
        self._history = list(sentences)

    def add_batch(self, batch: TranscriptBatch) -> bool:
        """Apply one recognition batch. Returns True when sentences or caption changed."""
        if self._frozen or not batch.words:
            return False
        caption = batch.caption.strip()
        if not caption:
            return False

        if not batch.is_final:
            self._caption = caption
            return True

        self._words.extend(batch.words)
        self._caption = ""
        self._resegment()
        return True

    def display(self) -> list[FinalizedSentence]:
        """History plus live sentences, with the live caption trailing the last one."""
        shown = self._history + self._sentences
        if not shown or not self._caption:
            return shown
        tail = shown[-1]
        text = f"{tail.transcript} {self._caption}".strip()
        return shown[:-1] + [tail.model_copy(update={"transcript": text})]

    def finalize(self) -> list[FinalizedSentence]:
        """Freeze the buffer and return the sentences to persist."""
        if not self._frozen:
            self._frozen = True
            self._caption = ""
            self._resegment()
            logger.info(
                "Transcript for %s finalized: %d words, %d sentences",
                self.meeting_id,
                len(self._words),
                len(self._sentences),
            )
        return self.sentences

    def _resegment(self) -> None:
        self._sentences = segment_words(
            self._words, self.meeting_id, self.fold_tail_speaker_change
        )
