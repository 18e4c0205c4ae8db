from chess_voice.core.candidates import IceCandidateQueue


def _cand(n: int) -> dict:
    return {"candidate": f"candidate:{n} 1 udp 1 10.0.0.{n} 9 typ host", "sdpMid": "0", "sdpMLineIndex": 0}


def test_drain_preserves_arrival_order() -> None:
    queue = IceCandidateQueue()
    for n in (3, 1, 2):
        queue.push(_cand(n))

    assert len(queue) == 3
    assert queue.drain() == [_cand(3), _cand(1), _cand(2)]
    assert len(queue) == 0
    assert queue.drain() == []


def test_candidate_applied_at_most_once() -> None:
    queue = IceCandidateQueue()
    assert queue.mark_applied(_cand(1))
    assert not queue.mark_applied(dict(_cand(1)))
    assert queue.mark_applied({**_cand(1), "sdpMLineIndex": 1})


def test_clear_forgets_pending_and_applied() -> None:
    queue = IceCandidateQueue()
    queue.push(_cand(1))
    queue.mark_applied(_cand(2))

    queue.clear()

    assert len(queue) == 0
    assert queue.mark_applied(_cand(2))
