from shadow_critic.backends import ReviewOutcome
from shadow_critic.config import ReviewConfiguration
from shadow_critic.governor import Admission, LoopGovernor, is_review_feedback


def _governor(max_reviews: int = 3) -> LoopGovernor:
    return LoopGovernor(ReviewConfiguration(enabled=True, max_reviews_per_prompt=max_reviews))


def _run(governor: LoopGovernor, outcome: ReviewOutcome) -> None:
    assert governor.admit().admitted
    governor.complete(outcome)
    governor.release()


def test_admit_marks_in_flight_and_refuses_overlap() -> None:
    governor = _governor()

    first = governor.admit()
    second = governor.admit()
    governor.release()
    third = governor.admit()

    assert first.admission is Admission.ADMITTED
    assert second.admission is Admission.BUSY
    assert third.admission is Admission.ADMITTED


def test_cap_without_approval_sends_stop_once() -> None:
    governor = _governor(max_reviews=2)
    blocked = ReviewOutcome(critique="Broken.", status="BLOCKED")
    _run(governor, blocked)
    _run(governor, blocked)

    first = governor.admit()
    second = governor.admit()

    assert governor.runtime.reviews_this_prompt == 2
    assert first.admission is Admission.EXHAUSTED
    assert first.send_stop is True
    assert second.admission is Admission.EXHAUSTED
    assert second.send_stop is False
    assert governor.runtime.in_flight is False


def test_cap_after_approval_does_not_stop() -> None:
    governor = _governor(max_reviews=1)
    _run(governor, ReviewOutcome(critique="Good.", approved=True, status="APPROVED"))

    decision = governor.admit()

    assert decision.admission is Admission.EXHAUSTED
    assert decision.send_stop is False


def test_failed_review_after_rejection_still_stops() -> None:
    governor = _governor(max_reviews=2)
    _run(governor, ReviewOutcome(critique="Null deref.", status="BLOCKED"))
    _run(governor, ReviewOutcome(critique="(Critic timed out)", error="timeout", timed_out=True))

    decision = governor.admit()

    assert governor.runtime.reviews_this_prompt == 2
    assert governor.runtime.last_verdict_approved is False
    assert decision.admission is Admission.EXHAUSTED
    assert decision.send_stop is True


def test_aborted_review_keeps_previous_verdict() -> None:
    governor = _governor(max_reviews=2)
    _run(governor, ReviewOutcome(critique="Good.", approved=True, status="APPROVED"))
    _run(governor, ReviewOutcome(critique="(Critic was aborted)", aborted=True))

    decision = governor.admit()

    assert governor.runtime.reviews_this_prompt == 2
    assert governor.runtime.last_verdict_approved is True
    assert decision.send_stop is False


def test_user_prompt_resets_but_critic_messages_do_not() -> None:
    governor = _governor(max_reviews=1)
    _run(governor, ReviewOutcome(critique="Broken.", status="BLOCKED"))
    assert governor.admit().send_stop is True

    assert governor.on_user_prompt("[Critic feedback]: fix it") is False
    assert governor.runtime.reviews_this_prompt == 1
    assert governor.on_user_prompt("Please try again") is True
    assert governor.runtime.reviews_this_prompt == 0
    assert governor.runtime.stop_sent is False
    assert governor.runtime.last_verdict_approved is None
    assert governor.admit().admitted


def test_stop_instruction_text() -> None:
    governor = _governor(max_reviews=4)

    assert governor.stop_instruction() == (
        "[Critic]: STOP. Maximum review attempts (4) reached without approval. "
        "Wait for user input before continuing."
    )
    assert is_review_feedback(governor.stop_instruction())
    assert not is_review_feedback("Critic is great")
