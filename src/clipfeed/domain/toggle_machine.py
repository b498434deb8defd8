from __future__ import annotations

from dataclasses import dataclass, replace

from clipfeed.models import ToggleState


@dataclass(frozen=True)
class ToggleStep:
    state: ToggleState
    # Value to send to the store now, or None when no request should go out.
    dispatch: bool | None = None


def initial_state(
    *, resource_id: str, user_id: str, active: bool, count: int, stale: bool = False
) -> ToggleState:
    return ToggleState(
        resource_id=resource_id,
        user_id=user_id,
        active=active,
        confirmed_active=active,
        confirmed_count=max(0, count),
        stale=stale,
    )


def request_toggle(state: ToggleState) -> ToggleStep:
    """A click: flip the displayed value right away.

    With nothing in flight the flipped value is dispatched. Otherwise it is only
    remembered as `desired_next`; at most one request is ever outstanding.
    """

    flipped = not state.active
    if not state.in_flight:
        return ToggleStep(
            state=replace(state, active=flipped, in_flight=True, desired_next=None),
            dispatch=flipped,
        )
    return ToggleStep(state=replace(state, active=flipped, desired_next=flipped))


def settle(
    state: ToggleState, *, requested: bool, ok: bool, count: int | None = None
) -> ToggleStep:
    """The outstanding request for `requested` finished.

    `count` is a total re-read from the store. When given it replaces the
    confirmed count instead of adding or removing one; used after a conflict,
    where our request did not change anything.
    """

    if not ok:
        return ToggleStep(
            state=replace(
                state,
                active=state.confirmed_active,
                in_flight=False,
                desired_next=None,
            )
        )

    confirmed_count = state.confirmed_count
    if count is not None:
        confirmed_count = max(0, count)
    elif requested != state.confirmed_active:
        confirmed_count = max(0, confirmed_count + (1 if requested else -1))
    confirmed = replace(state, confirmed_active=requested, confirmed_count=confirmed_count)

    desired = state.desired_next
    if desired is not None and desired != requested:
        # Exactly one corrective request for the latest wish.
        return ToggleStep(
            state=replace(confirmed, in_flight=True, desired_next=None, active=desired),
            dispatch=desired,
        )
    return ToggleStep(
        state=replace(confirmed, in_flight=False, desired_next=None, active=requested)
    )
