"""Wizard state as one tagged value plus a reducer.

States:
  Uninitialized → Initializing → Active(mapping, step, is_loading)
                              ↘ ErrorFallback (Active on the default mapping)
  Active → Redirecting(target)

``transition`` is pure: it never touches storage or the network. The
session layer in ``wizard.session`` performs the side effects and feeds
the outcomes back in as events.
"""

from dataclasses import dataclass, replace
from typing import Union

from akshayapatra.middleware.exceptions import WizardStateError
from akshayapatra.schemas.wizard import WizardView
from akshayapatra.wizard.steps import DEFAULT_MAPPING, LOADING_VIEW, StepKind, parse_kind, view_for


# ── States ───────────────────────────────────────────────────

@dataclass(frozen=True)
class Uninitialized:
    pass


@dataclass(frozen=True)
class Initializing:
    pass


@dataclass(frozen=True)
class Active:
    mapping: tuple[StepKind, ...]
    step: int = 0
    is_loading: bool = False


@dataclass(frozen=True)
class ErrorFallback(Active):
    """Initialisation failed; the user gets every step instead of nothing."""


@dataclass(frozen=True)
class Redirecting:
    target: str


WizardState = Union[Uninitialized, Initializing, Active, ErrorFallback, Redirecting]


# ── Events ───────────────────────────────────────────────────

@dataclass(frozen=True)
class Mounted:
    pass


@dataclass(frozen=True)
class Initialized:
    mapping: tuple[StepKind, ...]
    redirect_to: str


@dataclass(frozen=True)
class InitFailed:
    pass


@dataclass(frozen=True)
class BeginAdvance:
    step_index: int


@dataclass(frozen=True)
class StepAdvanced:
    step: int


@dataclass(frozen=True)
class MappingReplaced:
    mapping: tuple[StepKind, ...]
    step: int


@dataclass(frozen=True)
class AdvanceFailed:
    pass


@dataclass(frozen=True)
class RedirectRequested:
    target: str


@dataclass(frozen=True)
class Unmounted:
    pass


WizardEvent = Union[
    Mounted, Initialized, InitFailed, BeginAdvance, StepAdvanced,
    MappingReplaced, AdvanceFailed, RedirectRequested, Unmounted,
]


def _require_active(state: WizardState, event: WizardEvent) -> Active:
    if not isinstance(state, Active):
        raise WizardStateError(
            f"{type(event).__name__} is not allowed while the wizard is {status_of(state)}"
        )
    return state


def transition(state: WizardState, event: WizardEvent) -> WizardState:
    """Apply ``event`` to ``state``.

    ``BeginAdvance`` on a state that is already loading returns ``state``
    itself; callers use identity to tell that the advance was ignored.
    """
    if isinstance(event, Mounted):
        return Initializing()

    if isinstance(event, Unmounted):
        return Uninitialized()

    if isinstance(event, RedirectRequested):
        return Redirecting(target=event.target)

    if isinstance(event, Initialized):
        if not isinstance(state, Initializing):
            raise WizardStateError("Wizard is not initializing")
        if not event.mapping:
            return Redirecting(target=event.redirect_to)
        return Active(mapping=tuple(event.mapping), step=0)

    if isinstance(event, InitFailed):
        if not isinstance(state, Initializing):
            raise WizardStateError("Wizard is not initializing")
        return ErrorFallback(mapping=DEFAULT_MAPPING, step=0)

    active = _require_active(state, event)

    if isinstance(event, BeginAdvance):
        if active.is_loading:
            return state
        return replace(active, is_loading=True)

    if isinstance(event, StepAdvanced):
        return replace(active, step=max(0, event.step), is_loading=False)

    if isinstance(event, MappingReplaced):
        return replace(
            active, mapping=tuple(event.mapping), step=max(0, event.step), is_loading=False
        )

    if isinstance(event, AdvanceFailed):
        return replace(active, is_loading=False)

    raise WizardStateError(f"Unknown wizard event: {event!r}")


# ── Queries ──────────────────────────────────────────────────

def status_of(state: WizardState) -> str:
    if isinstance(state, Active):
        return "active"
    if isinstance(state, Redirecting):
        return "redirecting"
    if isinstance(state, Initializing):
        return "initializing"
    return "uninitialized"


def clamped_index(state: Active) -> int:
    if not state.mapping:
        return 0
    return min(max(state.step, 0), len(state.mapping) - 1)


def current_kind(state: WizardState) -> StepKind | None:
    if not isinstance(state, Active) or not state.mapping:
        return None
    return parse_kind(state.mapping[clamped_index(state)])


def render(state: WizardState, error: str | None = None) -> WizardView:
    """The view the client should show for ``state``."""
    if isinstance(state, Redirecting):
        return WizardView(status="redirecting", view=LOADING_VIEW, redirect_to=state.target)

    if not isinstance(state, Active):
        return WizardView(status=status_of(state), view=LOADING_VIEW, is_loading=True, error=error)

    kind = current_kind(state)
    return WizardView(
        status="active",
        step_index=state.step,
        step_kind=int(kind) if kind is not None else None,
        view=LOADING_VIEW if state.is_loading or kind is None else view_for(kind),
        mapping=[int(c) for c in state.mapping],
        is_loading=state.is_loading,
        fallback=isinstance(state, ErrorFallback),
        error=error,
    )


# ── Snapshot (de)serialisation ───────────────────────────────

def dump_state(state: WizardState) -> dict:
    if isinstance(state, Active):
        return {
            "type": "fallback" if isinstance(state, ErrorFallback) else "active",
            "mapping": [int(c) for c in state.mapping],
            "step": state.step,
            "is_loading": state.is_loading,
        }
    if isinstance(state, Redirecting):
        return {"type": "redirecting", "target": state.target}
    if isinstance(state, Initializing):
        return {"type": "initializing"}
    return {"type": "uninitialized"}


def load_state(data) -> WizardState:
    """Inverse of ``dump_state``; anything unreadable is ``Uninitialized``."""
    if not isinstance(data, dict):
        return Uninitialized()
    kind = data.get("type")
    if kind in ("active", "fallback"):
        # Unknown codes are kept; they render as the loading view
        mapping = tuple(
            parse_kind(c) or c for c in data.get("mapping") or () if isinstance(c, int)
        )
        cls = ErrorFallback if kind == "fallback" else Active
        return cls(
            mapping=mapping,
            step=int(data.get("step") or 0),
            is_loading=bool(data.get("is_loading")),
        )
    if kind == "redirecting":
        return Redirecting(target=str(data.get("target") or "/"))
    if kind == "initializing":
        return Initializing()
    return Uninitialized()
