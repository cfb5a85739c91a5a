import pytest

from startgrid_core import Competitor, OutOfRange, Slot, insert_with_cascade, preview_placement


def _c(number):
    return Competitor(number=number, pilot_name=f"Pilot {number}")


def _table(*numbers):
    return tuple(
        Slot(position=i, competitor=_c(n) if n is not None else None)
        for i, n in enumerate(numbers, start=1)
    )


def _numbers(slots):
    return [s.number for s in slots]


def test_empty_target_places_without_moving_others():
    slots = _table(1, None, 3, None, None)
    out = insert_with_cascade(slots, _c(9), 2)
    assert _numbers(out) == [1, 9, 3, None, None]


def test_forward_scan_shifts_block_toward_free_slot():
    # A, B, empty, D, E; insert C at 1 -> C, A, B, D, E
    slots = _table(1, 2, None, 4, 5)
    out = insert_with_cascade(slots, _c(3), 1)
    assert _numbers(out) == [3, 1, 2, 4, 5]


def test_backward_scan_used_when_nothing_free_ahead():
    slots = _table(None, 2, 3, 4, 5)
    out = insert_with_cascade(slots, _c(9), 4)
    assert _numbers(out) == [2, 3, 4, 9, 5]


def test_forward_scan_takes_nearest_free_slot():
    slots = _table(1, 2, None, 4, None)
    out = insert_with_cascade(slots, _c(9), 2)
    assert _numbers(out) == [1, 9, 2, 4, None]


def test_full_table_is_returned_unchanged():
    slots = _table(1, 2, 3, 4, 5)
    out = insert_with_cascade(slots, _c(9), 3)
    assert out == slots


def test_input_is_not_mutated_and_positions_are_kept():
    slots = _table(1, 2, None, 4, 5)
    before = tuple(slots)
    out = insert_with_cascade(slots, _c(3), 1)
    assert slots == before
    assert [s.position for s in out] == [1, 2, 3, 4, 5]


def test_out_of_range_position_is_rejected():
    slots = _table(None, None)
    with pytest.raises(OutOfRange):
        insert_with_cascade(slots, _c(1), 0)
    with pytest.raises(OutOfRange):
        insert_with_cascade(slots, _c(1), 3)


def test_preview_lists_only_changed_slots():
    slots = _table(1, 2, None, 4, 5)
    moves = preview_placement(slots, _c(3), 1)
    assert [(m.position, m.before.number, m.after.number) for m in moves[:2]] == [
        (1, 1, 3),
        (2, 2, 1),
    ]
    assert moves[2].position == 3
    assert moves[2].before is None
    assert moves[2].after.number == 2
    assert len(moves) == 3
