import asyncio

import pytest

from conftest import FakeEvaluator, FakeTranscriber, RecordingNotifier, seed_submission, seed_test
from speaking_pipeline.errors import GradingInProgress
from speaking_pipeline.gate import DbNotificationSink
from speaking_pipeline.models import (
	ANSWER_EVALUATED,
	ANSWER_FAILED,
	ANSWER_PENDING,
	Notification,
	SpeakingAnswer,
	SpeakingEvaluation,
	SpeakingSubmission,
)
from speaking_pipeline.services.evaluation import SpeakingEvaluator
from speaking_pipeline.services.grading import (
	GradingPipeline,
	claim_for_grading,
	finalize_submission,
	record_human_evaluation,
	submission_result,
)


def make_pipeline(session_factory, store, transcriber=None, evaluator=None, notifier=None, concurrency=4):
	return GradingPipeline(
		session_factory,
		store,
		transcriber or FakeTranscriber(),
		evaluator or FakeEvaluator(),
		notifier,
		concurrency=concurrency,
	)


def reload(session_factory, submission_id):
	session = session_factory()
	return session, session.get(SpeakingSubmission, submission_id)


def answers_by_question(submission):
	return {a.question_id: a for a in submission.answers}


def test_all_answers_graded_then_aggregated(db, session_factory, store):
	test, (q1, q2, q3) = seed_test(db, layout=(2, 1))
	submission = seed_submission(db, store, test, {q1: b"alpha", q2: b"beta", q3: b"gamma"})
	evaluator = FakeEvaluator({"alpha": 80, "beta": 60, "gamma": 100})
	notifier = RecordingNotifier()

	status = asyncio.run(make_pipeline(session_factory, store, evaluator=evaluator, notifier=notifier).grade_submission(submission.id))

	session, graded = reload(session_factory, submission.id)
	assert status == "evaluated"
	assert graded.status == "evaluated"
	assert graded.total_score == 240
	assert graded.max_score == 300
	assert graded.is_passed is True
	assert graded.needs_review is False
	assert graded.evaluated_at is not None
	by_q = answers_by_question(graded)
	assert by_q[q1].transcription == "alpha"
	assert by_q[q1].duration_seconds == 9.5
	assert all(a.grading_status == ANSWER_EVALUATED for a in graded.answers)
	assert all(len(a.evaluations) == 1 and a.evaluations[0].evaluation_type == "ai" for a in graded.answers)
	assert notifier.notified == [submission.id]
	session.close()


def test_failed_answers_are_isolated_and_flagged(db, session_factory, store):
	test, (q1, q2, q3) = seed_test(db, layout=(2, 1))
	submission = seed_submission(db, store, test, {q1: b"alpha", q2: b"broken", q3: b"gamma"})
	transcriber = FakeTranscriber(fail_on=[b"broken"])
	evaluator = FakeEvaluator({"alpha": 90, "gamma": 30}, fail_on=["gamma"])
	notifier = RecordingNotifier()

	status = asyncio.run(make_pipeline(session_factory, store, transcriber, evaluator, notifier).grade_submission(submission.id))

	session, graded = reload(session_factory, submission.id)
	by_q = answers_by_question(graded)
	assert status == "failed"
	assert graded.needs_review is True
	assert graded.total_score == 90
	assert graded.max_score == 300
	assert graded.is_passed is False
	assert by_q[q1].score == 90 and by_q[q1].grading_status == ANSWER_EVALUATED
	assert by_q[q2].score is None
	assert by_q[q2].failure_reason == "transcription_failed"
	assert by_q[q2].transcription is None
	assert by_q[q3].failure_reason == "evaluation_failed"
	# The transcript survives an evaluation failure
	assert by_q[q3].transcription == "gamma"
	assert by_q[q3].needs_review
	assert notifier.notified == []
	session.close()


BARRIER_CASES = [(1, 0), (1, 1), (3, 0), (3, 1), (3, 2), (3, 3), (5, 1), (5, 4)]


@pytest.mark.parametrize("total,failing", BARRIER_CASES)
def test_submission_is_evaluated_only_when_every_answer_is(db, session_factory, store, total, failing):
	test, qids = seed_test(db, layout=(total,))
	audios = {qid: (b"bad-%d" % i if i < failing else b"ok-%d" % i) for i, qid in enumerate(qids)}
	submission = seed_submission(db, store, test, audios)
	transcriber = FakeTranscriber(fail_on=[a for a in audios.values() if a.startswith(b"bad")], delay=0.001)
	notifier = RecordingNotifier()

	status = asyncio.run(make_pipeline(session_factory, store, transcriber, notifier=notifier, concurrency=2).grade_submission(submission.id))

	session, graded = reload(session_factory, submission.id)
	assert all(a.grading_status != ANSWER_PENDING for a in graded.answers)
	failed = [a for a in graded.answers if a.grading_status == ANSWER_FAILED]
	assert len(failed) == failing
	assert graded.total_score == 50 * (total - failing)
	assert graded.max_score == 100 * total
	if failing:
		assert status == graded.status == "failed"
		assert graded.needs_review is True
		assert notifier.notified == []
	else:
		assert status == graded.status == "evaluated"
		assert notifier.notified == [submission.id]
	session.close()


def test_unexpected_errors_do_not_abort_the_submission(db, session_factory, store):
	test, (q1, q2) = seed_test(db, layout=(2,))
	submission = seed_submission(db, store, test, {q1: b"alpha", q2: b"boom"})
	evaluator = FakeEvaluator({"alpha": 70}, crash_on=["boom"])

	status = asyncio.run(make_pipeline(session_factory, store, evaluator=evaluator).grade_submission(submission.id))

	session, graded = reload(session_factory, submission.id)
	assert status == "failed"
	assert answers_by_question(graded)[q2].failure_reason == "grading_error"
	assert graded.total_score == 70
	session.close()


def test_evaluation_timeout_fails_only_that_answer(db, session_factory, store):
	test, (q1, q2) = seed_test(db, layout=(1, 1))
	submission = seed_submission(db, store, test, {q1: b"quick", q2: b"stall-marker"})

	class Client:
		async def generate_json(self, prompt, *, system=None, temperature=0.2):
			if "stall-marker" in prompt:
				await asyncio.sleep(10)
			return '{"score": 75, "feedback": "fine"}'

		async def aclose(self):
			pass

	evaluator = SpeakingEvaluator(Client, timeout=0.1)
	status = asyncio.run(make_pipeline(session_factory, store, evaluator=evaluator).grade_submission(submission.id))

	session, graded = reload(session_factory, submission.id)
	by_q = answers_by_question(graded)
	assert status == "failed"
	assert by_q[q1].score == 75
	assert by_q[q2].grading_status == ANSWER_FAILED
	assert by_q[q2].failure_reason == "evaluation_failed"
	session.close()


def test_unanswered_questions_count_toward_max_score(db, session_factory, store):
	test, (q1, q2, q3) = seed_test(db, layout=(3,), max_points=10)
	submission = seed_submission(db, store, test, {q1: b"alpha"})

	asyncio.run(make_pipeline(session_factory, store, evaluator=FakeEvaluator({"alpha": 100})).grade_submission(submission.id))

	session, graded = reload(session_factory, submission.id)
	assert graded.status == "evaluated"
	assert graded.total_score == 10
	assert graded.max_score == 30
	assert graded.is_passed is False
	session.close()


def test_concurrency_is_bounded(db, session_factory, store):
	test, question_ids = seed_test(db, layout=(5,))
	submission = seed_submission(db, store, test, {qid: f"answer {i}".encode() for i, qid in enumerate(question_ids)})
	transcriber = FakeTranscriber(delay=0.02)

	asyncio.run(make_pipeline(session_factory, store, transcriber, concurrency=2).grade_submission(submission.id))

	assert len(transcriber.calls) == 5
	assert transcriber.max_active == 2


def test_regrade_only_failed_answers(db, session_factory, store):
	test, (q1, q2) = seed_test(db, layout=(2,))
	submission = seed_submission(db, store, test, {q1: b"alpha", q2: b"beta"})
	transcriber = FakeTranscriber()
	asyncio.run(
		make_pipeline(session_factory, store, transcriber, FakeEvaluator({"alpha": 80}, fail_on=["beta"])).grade_submission(submission.id)
	)
	session, graded = reload(session_factory, submission.id)
	failed_id = answers_by_question(graded)[q2].id
	session.close()

	notifier = RecordingNotifier()
	evaluator = FakeEvaluator({"beta": 40})
	status = asyncio.run(make_pipeline(session_factory, store, transcriber, evaluator, notifier).grade_submission(submission.id, [failed_id]))

	session, graded = reload(session_factory, submission.id)
	assert status == "evaluated"
	assert graded.total_score == 120
	assert graded.needs_review is False
	# The stored transcript is reused and the first answer is left alone
	assert transcriber.calls == [b"alpha", b"beta"]
	assert evaluator.calls == ["beta"]
	assert notifier.notified == [submission.id]
	session.close()


def test_finalize_waits_for_every_answer(db, session_factory, store):
	test, (q1, q2) = seed_test(db, layout=(2,))
	submission = seed_submission(db, store, test, {q1: b"alpha", q2: b"beta"})
	submission.status = "evaluating"
	first = answers_by_question(submission)[q1]
	first.grading_status = ANSWER_EVALUATED
	first.score = 50.0
	db.commit()

	assert finalize_submission(db, submission) == "evaluating"
	assert submission.total_score is None
	assert answers_by_question(submission)[q2].grading_status == ANSWER_PENDING


def test_human_evaluation_resolves_a_failed_submission(db, session_factory, store):
	test, (q1, q2) = seed_test(db, layout=(2,), max_points=50)
	submission = seed_submission(db, store, test, {q1: b"alpha", q2: b"broken"})
	asyncio.run(
		make_pipeline(session_factory, store, FakeTranscriber(fail_on=[b"broken"]), FakeEvaluator({"alpha": 80})).grade_submission(submission.id)
	)
	db.expire_all()
	failed = answers_by_question(db.get(SpeakingSubmission, submission.id))[q2]
	assert failed.grading_status == ANSWER_FAILED

	evaluation = record_human_evaluation(
		db,
		failed,
		evaluator_id="instructor-1",
		score=70,
		feedback="Audio was clear on replay.",
		rubric={"fluency": 7, "grammar": 6},
	)

	graded = db.get(SpeakingSubmission, submission.id)
	assert evaluation.evaluation_type == "human"
	assert evaluation.evaluator_id == "instructor-1"
	assert evaluation.fluency == 7
	assert failed.score == 35
	assert failed.needs_review is False
	assert graded.status == "evaluated"
	assert graded.total_score == 75
	assert graded.max_score == 100
	assert graded.is_passed is True
	assert db.query(SpeakingEvaluation).filter(SpeakingEvaluation.answer_id == failed.id).count() == 1


def test_db_notification_sink_writes_a_row(db, session_factory, store):
	test, (q1,) = seed_test(db, layout=(1,), title="Unit 3 speaking")
	submission = seed_submission(db, store, test, {q1: b"alpha"})

	asyncio.run(make_pipeline(session_factory, store, notifier=DbNotificationSink()).grade_submission(submission.id))

	db.expire_all()
	note = db.query(Notification).filter(Notification.related_id == submission.id).one()
	assert note.username == "learner"
	assert "Unit 3 speaking" in note.title
	assert "50/100" in note.message


def test_read_model_lists_answers_in_test_order(db, session_factory, store):
	test, (q1, q2, q3) = seed_test(db, layout=(1, 2))
	submission = seed_submission(db, store, test, {q3: b"c", q1: b"a", q2: b"b"})
	result = submission_result(db, submission)
	assert [r.question_id for r in result.per_question] == [q1, q2, q3]
	assert result.status == "pending"
	assert all(r.grading_status == "pending" for r in result.per_question)


def test_missing_audio_fails_transcription(db, session_factory, store):
	test, (q1,) = seed_test(db, layout=(1,))
	submission = seed_submission(db, store, test, {q1: b"alpha"})
	store.delete(db.query(SpeakingAnswer).one().audio_ref)

	status = asyncio.run(make_pipeline(session_factory, store).grade_submission(submission.id))

	session, graded = reload(session_factory, submission.id)
	assert status == "failed"
	assert graded.answers[0].failure_reason == "transcription_failed"
	session.close()


def test_unknown_submission_is_ignored(session_factory, store):
	assert asyncio.run(make_pipeline(session_factory, store).grade_submission("missing")) is None


def test_only_one_overlapping_claim_wins(db, session_factory, store):
	test, (q1, q2) = seed_test(db, layout=(2,))
	submission = seed_submission(db, store, test, {q1: b"alpha", q2: b"broken"})
	asyncio.run(make_pipeline(session_factory, store, FakeTranscriber(fail_on=[b"broken"])).grade_submission(submission.id))

	first, second = session_factory(), session_factory()
	mine = first.get(SpeakingSubmission, submission.id)
	theirs = second.get(SpeakingSubmission, submission.id)
	failed_ids = [a.id for a in mine.answers if a.grading_status == ANSWER_FAILED]
	assert theirs.status == "failed"

	claimed = claim_for_grading(first, mine, failed_ids)
	first.commit()
	with pytest.raises(GradingInProgress):
		claim_for_grading(second, theirs, failed_ids)

	session, reloaded = reload(session_factory, submission.id)
	assert [a.id for a in claimed] == failed_ids
	assert reloaded.status == "evaluating"
	assert reloaded.grading_started_at is not None
	assert answers_by_question(reloaded)[q2].grading_status == ANSWER_PENDING
	for s in (first, second, session):
		s.close()
