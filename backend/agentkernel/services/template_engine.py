import json
from pathlib import Path

from jinja2 import Environment, FileSystemLoader

from agentkernel.agent.tool_registry import ToolDefinition


class TemplateEngine:
    def __init__(self):
        template_dir = Path(__file__).parent.parent / "templates"
        self.env = Environment(
            loader=FileSystemLoader(str(template_dir)),
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def render(self, template_name: str, **context) -> str:
        return self.env.get_template(template_name).render(**context)

    def render_tool_prompt(
        self, template_name: str, instructions: str, tools: list[ToolDefinition]
    ) -> str:
        """Render a system prompt that describes ``tools`` in plain text."""
        return self.render(
            template_name,
            instructions=instructions,
            tools=[describe_tool(t) for t in tools],
        )


def describe_tool(tool: ToolDefinition) -> dict:
    """Flatten a tool's JSON schema into what the prompt templates print."""
    schema = tool.parameters or {}
    required = set(schema.get("required", []))
    params = [
        {
            "name": name,
            "required": name in required,
            "description": prop.get("description", "No description"),
            "type": prop.get("type", "any"),
        }
        for name, prop in (schema.get("properties") or {}).items()
    ]
    return {
        "name": tool.name,
        "description": tool.description,
        "params": params,
        "schema_json": json.dumps(schema, ensure_ascii=False),
    }


_engine: TemplateEngine | None = None


def get_template_engine() -> TemplateEngine:
    global _engine
    if _engine is None:
        _engine = TemplateEngine()
    return _engine
