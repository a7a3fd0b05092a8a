from schemas.model_replies import ReplyParser, clean_task_label


def test_subtasks_plain_array():
    tasks, warnings = ReplyParser.parse_subtasks('["Collect data", "Write report"]', "original")
    assert tasks == ["Collect data", "Write report"]
    assert warnings == []


def test_subtasks_fenced_array_with_task_labels():
    raw = '```json\n["Task 1: Collect data", "タスク2：Write report"]\n```'
    tasks, _ = ReplyParser.parse_subtasks(raw, "original")
    assert tasks == ["Collect data", "Write report"]


def test_subtasks_recovers_array_from_prose():
    tasks, warnings = ReplyParser.parse_subtasks('Sure! ["a", "b"] hope that helps', "original")
    assert tasks == ["a", "b"]
    assert any("Recovered" in warning for warning in warnings)


def test_subtasks_unparsable_reply_yields_whole_request():
    tasks, warnings = ReplyParser.parse_subtasks("I cannot split this", "Plan my trip to Kyoto")
    assert tasks == ["Plan my trip to Kyoto"]
    assert warnings


def test_subtasks_non_string_items_fall_back():
    tasks, _ = ReplyParser.parse_subtasks('[{"task": "a"}]', "req")
    assert tasks == ["req"]


def test_subtasks_object_reply_falls_back():
    tasks, _ = ReplyParser.parse_subtasks('{"tasks": ["a"]}', "req")
    assert tasks == ["req"]


def test_routing_reads_title_and_null():
    assert ReplyParser.parse_routing('{"assistantTitle": " Writer "}')[0] == "Writer"
    assert ReplyParser.parse_routing('{"assistantTitle": null}') == (None, [])


def test_routing_garbage_is_no_match():
    title, warnings = ReplyParser.parse_routing("The Writer assistant")
    assert title is None
    assert warnings


def test_parameters_extracted_from_surrounding_text():
    params, _ = ReplyParser.parse_parameters('Here you go: {"city": "Tokyo", "days": 3} done')
    assert params == {"city": "Tokyo", "days": 3}


def test_parameters_without_object():
    params, warnings = ReplyParser.parse_parameters("no json here")
    assert params is None
    assert warnings


def test_clean_task_label_leaves_plain_text():
    assert clean_task_label("  Write report ") == "Write report"
