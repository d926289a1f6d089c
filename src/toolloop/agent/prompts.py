"""Builds the message list a loop invocation starts from."""

from typing import (
    ClassVar,
    List,
    Optional,
    Sequence,
)

from toolloop.core.schema import (
    FinalStep,
    Message,
    ToolCall,
    ToolDescriptor,
    ToolStep,
)
from toolloop.protocol.step_codec import StepCodec


class PromptBuilder:
    """
    Default prompt strategy: caller preamble, step protocol rules, then the tool list.

    Subclass and override :meth:`build_system_prompt` to change the wording; the loop only relies
    on :meth:`build_messages`.
    """

    PROTOCOL_PROMPT: ClassVar[
        str
    ] = """\
Always reply with exactly one JSON object and no other text.
To call tools, reply with:
{tool_example}
When you have everything you need, reply with:
{final_example}
"summary" is optional. Tool results come back in the next user message; lines starting with \
"ERROR:" mean that call failed."""

    CORRECTION_PROMPT: ClassVar[str] = (
        "Your previous reply could not be read. Reply again with exactly one valid JSON object "
        'following the protocol: either {"step":"tool",...} or {"step":"final",...}.'
    )

    def __init__(self, codec: Optional[StepCodec] = None) -> None:
        self.codec = codec or StepCodec()

    def build_system_prompt(
        self, system_preamble: str, tool_descriptions: Sequence[ToolDescriptor]
    ) -> str:
        tool_example = self.codec.encode_step(
            ToolStep(calls=[ToolCall(name="<tool name>", arguments={"<arg>": "<value>"})])
        )
        final_example = self.codec.encode_step(FinalStep(answer="<reply to the user>"))
        parts = [
            system_preamble.strip(),
            self.PROTOCOL_PROMPT.format(tool_example=tool_example, final_example=final_example),
        ]
        if tool_descriptions:
            tools_info = [self._describe_tool(tool) for tool in tool_descriptions]
            parts.append("Available tools:\n" + "\n".join(tools_info))
        else:
            parts.append("No tools are available; answer directly with a final step.")
        return "\n\n".join(part for part in parts if part)

    @staticmethod
    def _describe_tool(tool: ToolDescriptor) -> str:
        properties = tool.argument_schema.get("properties", {})
        required = set(tool.argument_schema.get("required", []))
        params = ", ".join(
            f"{name}: {spec.get('type', 'any')}{'' if name in required else '?'}"
            for name, spec in properties.items()
        )
        line = f"- {tool.name}({params})"
        if tool.description:
            line += f": {tool.description}"
        return line

    def build_messages(
        self,
        user_request: str,
        system_preamble: str,
        tool_descriptions: Sequence[ToolDescriptor],
    ) -> List[Message]:
        """Return the initial ``[system, user]`` conversation for one request."""
        return [
            Message.system(self.build_system_prompt(system_preamble, tool_descriptions)),
            Message.user(user_request),
        ]

    def correction_message(self) -> Message:
        """Message sent after an unreadable reply when correction attempts are enabled."""
        return Message.user(self.CORRECTION_PROMPT)
