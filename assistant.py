"""Event guide that suggests sessions to attend and people to meet."""

import json
from textwrap import dedent
from typing import Any, Callable, Dict, List, Optional

import openai
import structlog
from jinja2 import Template

from services import Services

logger = structlog.get_logger(__name__)

APOLOGY = (
    "I apologize, but I encountered an error. "
    "Please try asking your question again or contact support."
)
LIVE_WINDOW_MINUTES = 15
MAX_TOOL_ROUNDS = 5

SYSTEM_PROMPT = dedent("""
You are a helpful and friendly AI event guide for the Eventwise conference.
Your goal is to provide personalized and actionable recommendations to attendees.
Use the available tools to answer questions about what sessions to attend or who to meet.

Event ID: {{ event_id or "unknown" }}

- If the user asks what to do now or soon, use the 'get_live_sessions' tool to see what's on.
- If the user mentions an interest or topic (e.g., "I'm interested in SaaS"), use the 'find_relevant_people' tool to suggest networking opportunities.
- If no specific tools apply, provide a general helpful suggestion.
- Be proactive and engaging in your responses. Keep them concise and to the point.
- Format your response as a direct suggestion. For example, if you find a session, say "You should check out the 'The AI Revolution' session starting soon!"
""")

TOOLS = [
    {
        "type": "function",
        "function": {
            "name": "get_live_sessions",
            "description": (
                "Get a list of event sessions that are starting in the next 15 minutes. "
                "Useful for when a user asks what they can do right now."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "event_id": {"type": "string", "description": "The event ID to query sessions for."},
                },
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "find_relevant_people",
            "description": "Finds conference attendees who have a specified interest. Useful for networking recommendations.",
            "parameters": {
                "type": "object",
                "properties": {
                    "interest": {
                        "type": "string",
                        "description": 'The interest or topic to search for, e.g., "SaaS" or "AI".',
                    },
                    "event_id": {"type": "string", "description": "The event ID to query attendees for."},
                },
                "required": ["interest"],
            },
        },
    },
]


class AssistantError(Exception):
    pass


class EventAssistant:
    def __init__(self, client: openai.OpenAI, services: Services, model: str = "gpt-4.1-mini"):
        self.client = client
        self.services = services
        self.model = model
        self._tools: Dict[str, Callable[..., List[dict]]] = {
            "get_live_sessions": self.get_live_sessions,
            "find_relevant_people": self.find_relevant_people,
        }

    # Tools

    def get_live_sessions(self, event_id: Optional[str] = None) -> List[dict]:
        if not event_id:
            return []
        try:
            sessions = self.services.sessions.upcoming(event_id, LIVE_WINDOW_MINUTES)
        except Exception:
            logger.exception("assistant_live_sessions_failed", event_id=event_id)
            return []
        return [{"title": s["title"], "start_time": s["start_time"].isoformat()} for s in sessions]

    def find_relevant_people(self, interest: str, event_id: Optional[str] = None) -> List[dict]:
        if not event_id:
            return []
        needle = interest.lower()
        try:
            attendees = self.services.attendees.list_by_event(event_id)
        except Exception:
            logger.exception("assistant_find_people_failed", event_id=event_id)
            return []
        return [
            {
                "name": a.get("name") or "Unknown",
                "title": a.get("title") or "",
                "company": a.get("company") or "",
            }
            for a in attendees
            if any(needle in i.lower() for i in a.get("interests", []))
        ]

    def _call_tool(self, name: str, arguments: str, event_id: Optional[str]) -> List[dict]:
        tool = self._tools.get(name)
        if tool is None:
            raise AssistantError(f"Unknown tool {name}")
        kwargs: Dict[str, Any] = json.loads(arguments or "{}")
        kwargs.setdefault("event_id", event_id)
        return tool(**kwargs)

    # Flow

    def _messages(self, query: str, history: List[dict], event_id: Optional[str]) -> List[dict]:
        messages = [{"role": "system", "content": Template(SYSTEM_PROMPT).render(event_id=event_id)}]
        for message in history:
            role = "assistant" if message["role"] == "model" else "user"
            messages.append({"role": role, "content": message["content"]})
        messages.append({"role": "user", "content": query})
        return messages

    def _run(self, query: str, history: List[dict], event_id: Optional[str]) -> str:
        messages = self._messages(query, history, event_id)
        for _ in range(MAX_TOOL_ROUNDS):
            response = self.client.chat.completions.create(model=self.model, messages=messages, tools=TOOLS)
            message = response.choices[0].message
            if not message.tool_calls:
                if not message.content:
                    raise AssistantError("Model returned an empty suggestion")
                return message.content

            messages.append(
                {
                    "role": "assistant",
                    "content": message.content,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {"name": call.function.name, "arguments": call.function.arguments},
                        }
                        for call in message.tool_calls
                    ],
                }
            )
            for call in message.tool_calls:
                result = self._call_tool(call.function.name, call.function.arguments, event_id)
                messages.append({"role": "tool", "tool_call_id": call.id, "content": json.dumps(result)})
        raise AssistantError("Too many tool rounds")

    def get_next_action(self, query: str, history: Optional[List[dict]] = None, event_id: Optional[str] = None) -> str:
        try:
            return self._run(query, history or [], event_id)
        except Exception:
            logger.exception("assistant_failed", event_id=event_id)
            return APOLOGY
