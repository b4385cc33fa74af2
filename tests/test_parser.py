from app.llm.parser import classify_failure, is_non_target_language, parse_predictions, strip_reasoning
from app.llm.types import FailureKind


def _scores(outcome):
    return {mid: (p.home, p.away) for mid, p in outcome.predictions.items()}


def test_same_payload_in_every_wrapper_yields_identical_predictions():
    body = '[{"match_id": "101", "home_score": 2, "away_score": 1}, {"match_id": "102", "home_score": 0, "away_score": 0}]'
    variants = [
        body,
        f"```json\n{body}\n```",
        f"<think>Both teams are in form, maybe 3-3?</think>\n{body}",
        f"Here are my predictions:\n{body}\nGood luck!",
    ]
    results = [parse_predictions(v, ["101", "102"]) for v in variants]
    assert all(r.ok for r in results)
    assert all(_scores(r) == {"101": (2, 1), "102": (0, 0)} for r in results)


def test_strategy_order():
    assert parse_predictions('{"home_score": 1, "away_score": 0}', ["5"]).strategy == "direct_json"
    assert parse_predictions('```json\n{"home_score": 1, "away_score": 0}\n```', ["5"]).strategy == "fenced_block"
    assert parse_predictions('I think {"home_score": 1, "away_score": 0} fits.', ["5"]).strategy == "bracketed"
    loose = parse_predictions("I expect a 2-1 home win.", ["5"])
    assert loose.strategy == "loose_score"
    assert _scores(loose) == {"5": (2, 1)}


def test_single_match_object_without_id():
    outcome = parse_predictions('{"home": 3, "away": 1}', [7])
    assert _scores(outcome) == {"7": (3, 1)}


def test_nested_prediction_object():
    outcome = parse_predictions('{"prediction": {"homeScore": 1, "awayScore": 2}}', ["9"])
    assert _scores(outcome) == {"9": (1, 2)}


def test_wrapped_predictions_list():
    raw = '{"predictions": [{"matchId": "1", "home_score": 1, "away_score": 1}]}'
    assert _scores(parse_predictions(raw, ["1"])) == {"1": (1, 1)}


def test_out_of_range_scores_are_rejected_not_clamped():
    outcome = parse_predictions('{"match_id": "1", "home_score": 25, "away_score": 0}', ["1"])
    assert not outcome.ok
    assert outcome.failure is FailureKind.PARSE_FAILURE
    assert any("out of bounds" in r for r in outcome.rejected)

    negative = parse_predictions('{"match_id": "1", "home_score": -1, "away_score": 0}', ["1"])
    assert not negative.ok


def test_unexpected_match_ids_are_dropped():
    raw = '[{"match_id": "1", "home_score": 1, "away_score": 0}, {"match_id": "99", "home_score": 2, "away_score": 2}]'
    outcome = parse_predictions(raw, ["1", "2"])
    assert _scores(outcome) == {"1": (1, 0)}
    assert any("unexpected match_id=99" in r for r in outcome.rejected)


def test_loose_scores_need_one_per_match():
    outcome = parse_predictions("2-1 and 0-0 and 3-2", ["1", "2"])
    assert not outcome.ok
    assert any("ambiguous" in r for r in outcome.rejected)

    positional = parse_predictions("Match one 2-1, match two 0-0", ["1", "2"])
    assert _scores(positional) == {"1": (2, 1), "2": (0, 0)}


def test_failure_kinds():
    assert parse_predictions("", ["1"]).failure is FailureKind.EMPTY_RESPONSE
    assert parse_predictions("   ", ["1"]).failure is FailureKind.EMPTY_RESPONSE
    assert parse_predictions("<think>only reasoning here</think>", ["1"]).failure is FailureKind.THINKING_TAG_LEAK
    assert parse_predictions("<think>unterminated reasoning", ["1"]).failure is FailureKind.THINKING_TAG_LEAK
    assert parse_predictions("我认为主队会赢得这场比赛", ["1"]).failure is FailureKind.LANGUAGE_MISMATCH
    assert parse_predictions("no idea, sorry", ["1"]).failure is FailureKind.PARSE_FAILURE


def test_strip_reasoning_and_language_helpers():
    assert strip_reasoning("<thinking>x</thinking>ok") == "ok"
    assert strip_reasoning(None) == ""
    assert is_non_target_language("Привет мир")
    assert not is_non_target_language("Home team wins 2-1")
    assert classify_failure("abc", "abc") is FailureKind.PARSE_FAILURE
