from runengine.engine.ledger import ActivityLedger, BoundedLog, summarize_thoughts
from runengine.engine.records import AgentEvent, ThinkingEntry


def test_window_sees_appends_after_the_mark():
    ledger = ActivityLedger()
    ledger.add_thought(ThinkingEntry(content="before"))
    mark = ledger.mark()

    for i in range(3):
        ledger.add_thought(ThinkingEntry(content=f"t{i}"))
        ledger.add_event(AgentEvent(type="progress", label=f"e{i}"))

    assert [t.content for t in ledger.thoughts_since(mark)] == ["t0", "t1", "t2"]
    assert len(ledger.events_since(mark)) == 3


def test_indices_survive_eviction():
    log: BoundedLog[int] = BoundedLog(maxlen=3)
    for i in range(5):
        assert log.append(i) == i

    assert log.end == 5
    assert log.retained_from == 2
    assert log.window(3) == [3, 4]
    # start before the retained range clips to what is left
    assert log.window(0) == [2, 3, 4]
    assert log.window(5) == []


def test_summarize_thoughts_joins_and_measures():
    entries = [
        ThinkingEntry(content="first", timestamp=1000),
        ThinkingEntry(content="second", timestamp=1750),
    ]
    text, duration = summarize_thoughts(entries)
    assert text == "first\n\nsecond"
    assert duration == 750

    assert summarize_thoughts([]) == (None, None)
