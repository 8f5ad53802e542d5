import asyncio

from src.cli import _parse_args, _relay_message
from src.core.request_queue import QueueClearedError
from src.providers.ports import AgentResponse


class StubRelay:
    def __init__(self, outcome):
        self.outcome = outcome

    async def send(self, session_key, message):
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def test_parse_args_defaults():
    args = _parse_args([])
    assert args.chat_id == 1
    assert args.thread_id is None
    assert args.model is None
    assert args.agent is None
    assert args.verbose is False

    args = _parse_args(
        ["--chat-id", "5", "--thread-id", "3", "--model", "a/b", "--agent", "plan"]
    )
    assert (args.chat_id, args.thread_id, args.model, args.agent) == (5, 3, "a/b", "plan")


def test_relay_message_prints_reply_and_tools(capsys):
    reply = AgentResponse(text="done", tools_used=["bash", "edit"])
    asyncio.run(_relay_message(StubRelay(reply), "1", "go"))
    assert capsys.readouterr().out == "done\n[tools: bash, edit]\n"


def test_relay_message_reports_dropped_and_errors(capsys):
    asyncio.run(_relay_message(StubRelay(QueueClearedError("1")), "1", "queued msg"))
    asyncio.run(_relay_message(StubRelay(ValueError("bad")), "1", "x"))
    out = capsys.readouterr().out
    assert "[dropped] queued msg" in out
    assert "[error] ValueError: bad" in out
