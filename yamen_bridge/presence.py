"""
Card presence state machine.

Raw transport notifications are noisy: a seated card can be reported again,
a swap can produce a burst of reads, and a removal can arrive after the next
card was already detected. `transition` turns them into clean episode
open/close effects. It is a pure function; the device actor applies the
effects.
"""

from dataclasses import dataclass, replace


@dataclass(frozen=True)
class CardDetected:
    uid: str


@dataclass(frozen=True)
class CardRemoved:
    uid: str | None = None


@dataclass(frozen=True)
class ReaderState:
    uid: str | None = None
    remote_event_id: object = None
    last_scan_time: float = 0.0

    @property
    def present(self) -> bool:
        return self.uid is not None


EMPTY = ReaderState()


@dataclass(frozen=True)
class OpenEpisode:
    uid: str


@dataclass(frozen=True)
class CloseEpisode:
    uid: str
    remote_event_id: object


def normalize_uid(uid):
    if uid is None:
        return None
    uid = str(uid).strip().upper()
    return uid or None


def transition(state: ReaderState, event, now: float, new_card_window: float):
    """Return (new_state, effects) for one raw event."""
    if isinstance(event, CardDetected):
        uid = normalize_uid(event.uid)
        if uid is None:
            return state, []

        if not state.present:
            return ReaderState(uid=uid, last_scan_time=now), [OpenEpisode(uid)]

        if state.uid == uid:
            # a seated card never opens a second episode
            return state, []

        if now - state.last_scan_time < new_card_window:
            return state, []

        closing = CloseEpisode(state.uid, state.remote_event_id)
        return ReaderState(uid=uid, last_scan_time=now), [closing, OpenEpisode(uid)]

    if isinstance(event, CardRemoved):
        if not state.present:
            return state, []
        uid = normalize_uid(event.uid)
        if uid is not None and uid != state.uid:
            # stale removal racing a newer detection
            return state, []
        return EMPTY, [CloseEpisode(state.uid, state.remote_event_id)]

    raise TypeError(f"Unknown reader event: {event!r}")


def with_event_id(state: ReaderState, uid: str, event_id) -> ReaderState:
    """Attach the remote record id if the reader still tracks `uid`."""
    if state.uid != uid:
        return state
    return replace(state, remote_event_id=event_id)
