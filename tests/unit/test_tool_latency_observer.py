import asyncio

from pydantic import BaseModel

from docqa.agent.registry import ToolRegistry, ToolSpec


class EchoInput(BaseModel):
    text: str


def test_tool_observer_captures_latency_and_payload() -> None:
    registry = ToolRegistry()

    async def _handler(data: EchoInput) -> dict:
        return {"text": data.text.upper()}

    registry.register(
        ToolSpec(
            name="echo",
            description="uppercase",
            args_schema=EchoInput,
            handler=_handler,
        )
    )

    observed = []
    registry.set_observer(observed.append)
    result = asyncio.run(registry.execute("echo", {"text": "hello"}))
    registry.set_observer(None)

    assert result.success and result.data == {"text": "HELLO"}
    assert len(observed) == 1
    assert observed[0].name == "echo"
    assert observed[0].input_payload == {"text": "hello"}
    assert observed[0].latency_ms >= 0.0
    assert observed[0].success
    assert "HELLO" in observed[0].output_preview


def test_unknown_tool_is_not_observed() -> None:
    registry = ToolRegistry()
    observed = []
    registry.set_observer(observed.append)

    asyncio.run(registry.execute("echo", {"text": "hello"}))

    assert observed == []
