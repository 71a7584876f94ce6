class AgentCallbacks:
    """Events from a running agent, delivered in generation order.

    Hooks are awaited inline by the run loop, so an implementation observes
    them strictly in sequence. ``on_response`` or ``on_error`` fires at most
    once per run and is always the last event. Cancelled runs end without
    either.
    """

    async def on_thinking(self):
        pass

    async def on_tool_call(self, name: str, arguments: str):
        pass

    async def on_tool_result(self, name: str, result: str, success: bool):
        pass

    async def on_stream_chunk(self, text: str):
        pass

    async def on_response(self, content: str):
        pass

    async def on_error(self, error: Exception):
        pass
