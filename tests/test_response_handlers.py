from app.llm.handlers import ResponseHandler, apply_handler


def test_pass_through_keeps_content():
    assert apply_handler(ResponseHandler.PASS_THROUGH, "  2-1 ") == "  2-1 "
    assert apply_handler(ResponseHandler.PASS_THROUGH, None) == ""


def test_strip_reasoning_removes_think_blocks():
    raw = "<think>home side is strong</think>\n{\"home_score\": 2, \"away_score\": 0}"
    assert apply_handler(ResponseHandler.STRIP_REASONING, raw) == '{"home_score": 2, "away_score": 0}'
    assert apply_handler("strip_reasoning", "<reasoning>a</reasoning>b") == "b"


def test_extract_json_from_fence_and_prose():
    fenced = "Sure!\n```json\n{\"home_score\": 1, \"away_score\": 1}\n```"
    assert apply_handler(ResponseHandler.EXTRACT_JSON, fenced) == '{"home_score": 1, "away_score": 1}'

    array = 'Answer: [{"match_id": "1", "home_score": 0, "away_score": 2}] done'
    assert apply_handler(ResponseHandler.EXTRACT_JSON, array) == '[{"match_id": "1", "home_score": 0, "away_score": 2}]'


def test_extract_json_without_json_returns_input():
    assert apply_handler(ResponseHandler.EXTRACT_JSON, "2-1") == "2-1"
