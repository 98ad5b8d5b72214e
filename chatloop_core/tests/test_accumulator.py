from chatloop_core.agents.accumulator import ToolCallAccumulator
from chatloop_core.domain.models import ToolCall, ToolCallFragment


def accumulate(fragments):
    acc = ToolCallAccumulator()
    for fragment in fragments:
        acc.add(fragment)
    return acc.finalize()


def test_fragments_merge_by_index():
    calls = accumulate([
        ToolCallFragment(index=0, id="c1", name_fragment="weather", args_fragment='{"ci'),
        ToolCallFragment(index=1, id="c2", name_fragment="time", args_fragment="{}"),
        ToolCallFragment(index=0, name_fragment="_api", args_fragment='ty": "Paris"}'),
    ])
    assert calls == (
        ToolCall(id="c1", name="weather_api", arguments='{"city": "Paris"}'),
        ToolCall(id="c2", name="time", arguments="{}"),
    )


def test_fragments_merge_by_id_without_index():
    calls = accumulate([
        ToolCallFragment(id="a", name_fragment="read"),
        ToolCallFragment(id="b", name_fragment="write"),
        ToolCallFragment(id="a", args_fragment='{"path": "x"}'),
    ])
    assert [c.id for c in calls] == ["a", "b"]
    assert calls[0].arguments == '{"path": "x"}'


def test_anonymous_fragment_continues_last_call():
    calls = accumulate([
        ToolCallFragment(id="a", name_fragment="read", args_fragment='{"p'),
        ToolCallFragment(args_fragment='": 1}'),
    ])
    assert calls == (ToolCall(id="a", name="read", arguments='{"p": 1}'),)


def test_missing_and_duplicate_ids_are_generated():
    calls = accumulate([
        ToolCallFragment(index=0, name_fragment="a"),
        ToolCallFragment(index=1, id="x", name_fragment="b"),
        ToolCallFragment(index=2, id="x", name_fragment="c"),
    ])
    ids = [c.id for c in calls]
    assert ids[0] == "tool_call_0"
    assert ids[1] == "x"
    assert len(set(ids)) == 3


def test_empty_accumulator():
    acc = ToolCallAccumulator()
    assert not acc
    assert acc.finalize() == ()
