import pytest

from engine.template_evaluator import (
    TemplateError,
    TemplateEvaluator,
    normalize_params,
    parse_path,
    render_request_fragment,
    render_response_text,
    resolve_path,
)


def test_parse_path_mixed_segments():
    assert parse_path("data[0].b64_json") == ["data", 0, "b64_json"]
    assert parse_path("response[\"content-type\"]") == ["response", "content-type"]
    assert parse_path("items['a b'][2]") == ["items", "a b", 2]


def test_request_fragment_resolves_bare_and_rooted_names():
    fragment = render_request_fragment(
        '{"q": "${prompt}", "n": ${params.count}, "tags": ${tags}}',
        {"prompt": "tokyo", "count": 3, "tags": ["a", "b"]},
    )
    assert fragment == {"q": "tokyo", "n": 3, "tags": ["a", "b"]}


def test_json_filter_quotes_strings():
    fragment = render_request_fragment('{"q": ${prompt | json}}', {"prompt": 'say "hi"'})
    assert fragment == {"q": 'say "hi"'}


def test_response_text_template():
    response = {"main": {"temp": 21.5}, "weather": [{"description": "clear sky"}]}
    text = render_response_text("Temp ${main.temp}, ${response.weather[0].description}", response)
    assert text == "Temp 21.5, clear sky"


def test_length_of_list():
    assert resolve_path({"items": [1, 2, 3]}, "items.length") == 3


@pytest.mark.parametrize(
    "template",
    [
        "${missing}",
        "${items[5]}",
        "${__import__('os').system('id')}",
        "${prompt.upper()}",
        "${prompt | eval}",
    ],
)
def test_only_path_lookups_are_evaluated(template):
    evaluator = TemplateEvaluator({"params": {"prompt": "x", "items": [1]}}, "params")
    with pytest.raises(TemplateError):
        evaluator.render(template)


def test_render_json_rejects_invalid_output():
    with pytest.raises(TemplateError):
        render_request_fragment('{"q": ${prompt}}', {"prompt": "not quoted"})


def test_normalize_params_collapses_newlines_in_strings_only():
    normalized = normalize_params({"prompt": "line one\r\nline two\n\nthree", "count": 2})
    assert normalized == {"prompt": "line one line two three", "count": 2}
