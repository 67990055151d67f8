from runengine.engine.queue import MessageQueue


def test_fifo_order():
    q = MessageQueue()
    ids = [q.enqueue(f"msg {i}").id for i in range(4)]

    assert [item.id for item in q.items()] == ids
    assert [q.pop_next().content for _ in range(4)] == ["msg 0", "msg 1", "msg 2", "msg 3"]
    assert q.pop_next() is None


def test_cancel_removes_only_that_item():
    q = MessageQueue()
    a = q.enqueue("a")
    b = q.enqueue("b", action="rerun_tests")
    c = q.enqueue("c")

    assert q.cancel(b.id) is True
    assert q.cancel(b.id) is False
    assert [item.id for item in q.items()] == [a.id, c.id]
    assert len(q) == 2


def test_cancel_after_dequeue_is_a_noop():
    q = MessageQueue()
    item = q.enqueue("x")
    assert q.pop_next() == item
    assert q.cancel(item.id) is False
