#!/usr/bin/env python3
from __future__ import annotations

import importlib
import json
import os
import sys
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from fastapi.testclient import TestClient


@dataclass
class Scenario:
  name: str
  message: str
  expected_tool: str | None
  expect_booking: bool = False


def parse_sse_events(payload_text: str) -> list[dict[str, Any]]:
  events: list[dict[str, Any]] = []
  current: dict[str, Any] = {}
  for raw_line in payload_text.splitlines():
    line = raw_line.strip("\r")
    if line.startswith("event: "):
      current["event"] = line[7:]
    elif line.startswith("data: "):
      current["data"] = line[6:]
    elif line == "" and current:
      events.append(current)
      current = {}
  if current:
    events.append(current)
  return events


def event_payloads(events: list[dict[str, Any]], event_name: str) -> list[Any]:
  payloads: list[Any] = []
  for event in events:
    if event.get("event") != event_name:
      continue
    raw = event.get("data")
    try:
      payloads.append(json.loads(raw) if isinstance(raw, str) else raw)
    except json.JSONDecodeError:
      payloads.append(raw)
  return payloads


def run() -> int:
  repo_root = Path(__file__).resolve().parents[1]
  backend_dir = repo_root / "backend"
  if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

  # Isolated database with the demo doctor directory; model keys come from the environment.
  scratch_dir = Path(tempfile.mkdtemp(prefix="healthguide-smoke-"))
  os.environ.setdefault("HEALTHGUIDE_DB_PATH", str(scratch_dir / "smoke.sqlite"))
  os.environ.setdefault("HEALTHGUIDE_SEED_DOCTORS", "true")

  backend_module = importlib.import_module("main")
  backend_module = importlib.reload(backend_module)

  scenarios = [
    Scenario(
      name="General Health Question",
      message="What are common signs of dehydration?",
      expected_tool=None,
    ),
    Scenario(
      name="Doctor Directory Lookup",
      message="Which doctors are available to see me?",
      expected_tool="get_doctors",
    ),
    Scenario(
      name="Appointment Booking With All Details",
      message=(
        "Please book me with Dr. Sarah Chen. My name is Jane Doe, I am 41 years old, "
        "the reason is a persistent cough, my address is 500 Forbes Ave and my zipcode is 15213."
      ),
      expected_tool="book_appointment",
      expect_booking=True,
    ),
  ]

  results: list[dict[str, Any]] = []

  with TestClient(backend_module.app) as client:
    for scenario in scenarios:
      session_response = client.post("/sessions", json={"language": "en"})
      session_id = session_response.json().get("id")
      chat_response = client.post(f"/sessions/{session_id}/messages", data={"message": scenario.message})

      scenario_result: dict[str, Any] = {
        "name": scenario.name,
        "expected_tool": scenario.expected_tool,
        "chat_status_code": chat_response.status_code,
      }
      if chat_response.status_code != 200:
        scenario_result["pass"] = False
        scenario_result["error"] = f"messages endpoint returned {chat_response.status_code}"
        results.append(scenario_result)
        continue

      events = parse_sse_events(chat_response.text)
      messages = event_payloads(events, "message")
      message = messages[0] if messages and isinstance(messages[0], dict) else {}
      bookings = event_payloads(events, "booking")
      tool_events = client.get(f"/sessions/{session_id}/tool-events").json().get("items", [])
      used_tools = [item.get("tool_name") for item in tool_events]

      scenario_result["event_types"] = [event.get("event") for event in events]
      scenario_result["chat_message_preview"] = str(message.get("text") or "")[:240]
      scenario_result["degraded"] = message.get("degraded")
      scenario_result["used_tools"] = used_tools
      scenario_result["bookings"] = bookings

      checks = [bool(message) and not message.get("degraded")]
      if scenario.expected_tool:
        checks.append(scenario.expected_tool in used_tools)
      if scenario.expect_booking:
        checks.append(len(bookings) == 1)
      scenario_result["pass"] = all(checks)
      if not scenario_result["pass"]:
        scenario_result["error"] = "Reply was degraded, the expected tool was not used, or no booking was emitted."
      results.append(scenario_result)

  passed = sum(1 for item in results if item.get("pass"))
  failed = len(results) - passed
  timestamp = datetime.now(timezone.utc).isoformat()

  report_lines = [
    "# Chatbot E2E Smoke Report",
    "",
    f"- Timestamp (UTC): `{timestamp}`",
    f"- HEALTHGUIDE_CHAT_PROVIDER: `{os.getenv('HEALTHGUIDE_CHAT_PROVIDER', 'auto')}`",
    f"- Total scenarios: `{len(results)}`",
    f"- Passed: `{passed}`",
    f"- Failed: `{failed}`",
    "",
    "## Scenario Results",
    "",
  ]

  for item in results:
    status = "PASS" if item.get("pass") else "FAIL"
    report_lines.append(f"### {status} - {item['name']}")
    report_lines.append(f"- Expected tool: `{item.get('expected_tool')}`")
    report_lines.append(f"- Tools used: `{item.get('used_tools')}`")
    report_lines.append(f"- Chat status code: `{item.get('chat_status_code')}`")
    report_lines.append(f"- Degraded: `{item.get('degraded')}`")
    if item.get("error"):
      report_lines.append(f"- Error: `{item['error']}`")
    preview = item.get("chat_message_preview") or ""
    if preview:
      report_lines.append(f"- Chat preview: `{preview}`")
    report_lines.append("- Booking events:")
    report_lines.append("```json")
    report_lines.append(json.dumps(item.get("bookings"), indent=2, ensure_ascii=True))
    report_lines.append("```")
    report_lines.append("")

  report_path = repo_root / "CHATBOT_E2E_SMOKE_REPORT.md"
  report_path.write_text("\n".join(report_lines), encoding="utf-8")
  print(f"Wrote report: {report_path}")  # noqa: T201
  print(f"Passed {passed}/{len(results)} scenarios.")  # noqa: T201

  return 0 if failed == 0 else 1


if __name__ == "__main__":
  raise SystemExit(run())
