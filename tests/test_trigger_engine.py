import httpx
import pytest

from engine.cancellation import CancellationToken, OperationCancelled
from engine.external_call import ExternalCallExecutor
from engine.trigger_engine import TriggerEngine, TriggerOutcome, detect_triggered, trigger_matches
from middleware.observability import PipelineTracker
from schemas.assistant import APIConfig, Message, Trigger


def weather_api(**overrides):
    data = {
        "id": "weather",
        "name": "Weather",
        "description": "Current weather",
        "endpoint": "https://api.example.com/weather",
        "triggers": [{"type": "keyword", "value": "weather,forecast", "description": "current conditions"}],
        "responseTemplate": "Temperature: ${response.temp}",
    }
    data.update(overrides)
    return APIConfig.model_validate(data)


def test_keyword_trigger_is_case_insensitive_substring():
    trigger = Trigger(type="keyword", value="weather,forecast")
    assert trigger_matches(trigger, "What's the Weather like?")
    assert not trigger_matches(trigger, "What's the time?")


def test_pattern_trigger():
    trigger = Trigger(type="pattern", value=r"\d{5}")
    assert trigger_matches(trigger, "Ship to 94107 please")
    assert not trigger_matches(trigger, "Ship to 9410 please")


def test_invalid_pattern_is_non_match():
    assert not trigger_matches(Trigger(type="pattern", value="(unclosed"), "(unclosed")


def test_detect_triggered_evaluates_every_api():
    apis = [
        weather_api(),
        weather_api(id="zip", name="Zip", triggers=[{"type": "pattern", "value": r"\d{5}"}]),
        weather_api(id="silent", name="Silent", triggers=[]),
    ]
    names = [api.name for api in detect_triggered(apis, "weather for 10001")]
    assert names == ["Weather", "Zip"]


@pytest.mark.asyncio
async def test_default_parameters_skip_gateway(scripted_gateway):
    gateway = scripted_gateway()
    engine = TriggerEngine(gateway, ExternalCallExecutor())
    api = weather_api(authType="bearer", authConfig={"token": "tok"})

    params = await engine.extract_parameters("weather in Paris", api, None)

    assert params["prompt"] == "weather in Paris"
    assert params["apiKey"] == "tok"
    assert params["originalMessage"] == "weather in Paris"
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_extracted_parameters_carry_history_shapes(scripted_gateway):
    gateway = scripted_gateway(['Result: {"city": "Paris"}'])
    engine = TriggerEngine(gateway, ExternalCallExecutor())
    api = weather_api(parameterExtraction=[{"paramName": "city", "description": "city name"}])
    history = [Message(role="user", content="hi"), Message(role="assistant", content="hello")]

    params = await engine.extract_parameters("weather in Paris", api, None, history)

    assert params["city"] == "Paris"
    assert params["prompt"] == "weather in Paris"
    assert params["openAIFormattedHistory"][1] == {"role": "assistant", "content": "hello"}
    assert params["geminiFormattedHistory"][1]["role"] == "model"
    assert "city: city name" in gateway.calls[0]["history"][0].text


@pytest.mark.asyncio
async def test_unparsable_extraction_falls_back_to_defaults(scripted_gateway):
    gateway = scripted_gateway(["no idea"])
    engine = TriggerEngine(gateway, ExternalCallExecutor())
    api = weather_api(parameterExtraction=[{"name": "city", "description": "city"}])

    params = await engine.extract_parameters("weather?", api, None)

    assert params == {"prompt": "weather?", "originalMessage": "weather?"}


@pytest.mark.asyncio
async def test_cancelled_run_stops_parameter_extraction(scripted_gateway):
    engine = TriggerEngine(scripted_gateway(['{"city": "Paris"}']), ExternalCallExecutor())
    api = weather_api(parameterExtraction=[{"name": "city", "description": "city"}])
    token = CancellationToken()
    token.cancel()

    with pytest.raises(OperationCancelled):
        await engine.extract_parameters("weather in Paris", api, None, token=token)


@pytest.mark.asyncio
async def test_process_appends_text_results(scripted_gateway):
    executor = ExternalCallExecutor(transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"temp": 21})))
    engine = TriggerEngine(scripted_gateway(), executor)
    tracker = PipelineTracker("req-1", "chat")

    outcome = await engine.process("weather today?", [weather_api()], None, tracker=tracker)

    assert outcome.triggered == ["Weather"]
    assert outcome.processed_message == "weather today?\n\n[Supplemental information: Weather]\nTemperature: 21"
    assert outcome.augmented
    assert outcome.error is None
    assert tracker.metrics.external_calls == 1
    assert tracker.metrics.calls[0].stage == "external_api"


@pytest.mark.asyncio
async def test_process_image_result_takes_precedence(scripted_gateway):
    payload = {"data": [{"b64_json": "aW1n"}]}
    executor = ExternalCallExecutor(transport=httpx.MockTransport(lambda request: httpx.Response(200, json=payload)))
    engine = TriggerEngine(scripted_gateway(), executor)
    api = weather_api(name="Painter", responseType="image", triggers=[{"type": "keyword", "value": "draw"}])

    outcome = await engine.process("draw a cat", [api], None)

    assert outcome.image.base64_data == "aW1n"
    assert not outcome.augmented


@pytest.mark.asyncio
async def test_failed_call_is_not_appended(scripted_gateway):
    executor = ExternalCallExecutor(transport=httpx.MockTransport(lambda request: httpx.Response(500, text="boom")))
    engine = TriggerEngine(scripted_gateway(), executor)

    outcome = await engine.process("weather?", [weather_api()], None)

    assert outcome.processed_message == "weather?"
    assert "Weather" in outcome.error


def test_enhance_system_prompt_describes_sources():
    outcome = TriggerOutcome(original_message="weather?", processed_message="weather?\n\n[Supplemental information: Weather]\n21")
    prompt = TriggerEngine.enhance_system_prompt("Be brief.", [weather_api()], outcome)
    assert prompt.startswith("Be brief.")
    assert "API name: Weather" in prompt
    assert "current conditions" in prompt
    assert "Original message: \"weather?\"" in prompt


def test_enhance_system_prompt_without_apis_is_unchanged():
    assert TriggerEngine.enhance_system_prompt("Be brief.", []) == "Be brief."
