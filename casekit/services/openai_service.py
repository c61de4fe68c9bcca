"""OpenAI wrapper.

Agent test chat and AI case drafts.
"""
from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional, Tuple

from flask import current_app
from openai import OpenAI


class AIServiceError(Exception):
    pass


def client_ready() -> Tuple[bool, str]:
    key = (current_app.config.get("OPENAI_API_KEY") or "").strip()
    if not key:
        return False, "OPENAI_API_KEY is missing"
    return True, ""


def model_name(preferred: Optional[str] = None) -> str:
    # Agents created before the OpenAI switch still carry gemini model names
    pref = (preferred or "").strip()
    if pref and not pref.lower().startswith("gemini"):
        return pref
    return (current_app.config.get("OPENAI_MODEL") or "").strip() or "gpt-4.1"


def get_client():
    ok, _ = client_ready()
    if not ok:
        return None
    return OpenAI(api_key=current_app.config["OPENAI_API_KEY"].strip(), timeout=60)


def safe_json_loads(s: str) -> Tuple[Optional[Dict[str, Any]], str]:
    if not s:
        return None, "Empty model output"

    # Strip markdown code blocks if present
    text = s.strip()
    if text.startswith("```"):
        lines = text.split("\n", 1)
        if len(lines) > 1:
            text = lines[1]
        if text.endswith("```"):
            text = text[:-3].strip()
        elif "```" in text:
            text = text.rsplit("```", 1)[0].strip()

    try:
        obj = json.loads(text)
        if isinstance(obj, dict):
            return obj, ""
    except ValueError:
        pass

    # Fallback: extract first JSON object from text
    m = re.search(r"\{.*\}", text, flags=re.DOTALL)
    if m:
        try:
            obj = json.loads(m.group(0))
            if isinstance(obj, dict):
                return obj, ""
        except ValueError:
            pass
    return None, "Model did not return valid json"


def llm_json(prompt: str, temperature: float = 0.7) -> Tuple[Optional[Dict[str, Any]], str]:
    client = get_client()
    if client is None:
        ok, msg = client_ready()
        return None, msg or "Client not available"
    try:
        res = client.chat.completions.create(
            model=model_name(),
            messages=[
                {"role": "system", "content": "You are a JSON API. Return ONLY valid JSON with no markdown formatting, no code fences, no explanations. Start your response with { and end with }."},
                {"role": "user", "content": prompt},
            ],
            temperature=temperature,
        )
        text = (res.choices[0].message.content or "").strip()
        obj, err = safe_json_loads(text)
        if err:
            return None, err
        return obj, ""
    except Exception as e:
        current_app.logger.exception("LLM request failed")
        return None, f"LLM request failed: {type(e).__name__}: {e}"


# ============ Agent chat ============

def build_chat_messages(system_prompt: str, history: List[Dict[str, Any]], message: str) -> List[Dict[str, str]]:
    messages: List[Dict[str, str]] = []
    if (system_prompt or "").strip():
        messages.append({"role": "system", "content": system_prompt.strip()})
    for turn in history or []:
        if not isinstance(turn, dict):
            continue
        text = str(turn.get("text") or turn.get("content") or "").strip()
        if not text:
            continue
        role = str(turn.get("role") or "").strip().lower()
        messages.append({"role": "user" if role == "user" else "assistant", "content": text})
    messages.append({"role": "user", "content": message})
    return messages


def chat_with_agent(agent, history: List[Dict[str, Any]], message: str) -> str:
    """Send one test message to ``agent`` and return its reply."""
    client = get_client()
    if client is None:
        _, msg = client_ready()
        raise AIServiceError(msg)
    try:
        res = client.chat.completions.create(
            model=model_name(agent.model),
            messages=build_chat_messages(agent.system_prompt, history, message),
            temperature=0.8,
        )
    except Exception as e:
        raise AIServiceError(f"Chat request failed: {type(e).__name__}: {e}") from e
    reply = (res.choices[0].message.content or "").strip()
    if not reply:
        raise AIServiceError("Empty reply from model")
    return reply


# ============ Case drafts ============

DOCUMENT_CATEGORIES = ("narrative", "evidence", "profile")


def case_draft_prompt(case, prompt: str) -> str:
    idea = (prompt or "").strip()[:4000]
    return f"""
You are a writer of printed investigative mystery games. Players receive a box
with paper documents and must solve the case from them.

Case title: {case.title}
Theme: {case.theme or 'mystery'}
Player age rating: {case.age_rating or '14'}+
Complexity: {case.complexity or 'medium'}
Author's idea: {idea or '(none, invent one that fits the title)'}

Split the story into 3 to 8 printable documents: an opening narrative, suspect
profiles, and pieces of evidence. Keep content appropriate for the age rating.

Output VALID JSON only:
{{
  "documents": [
    {{
      "title": "string - document title",
      "summary": "string - one line describing the document for the editor",
      "category": "string - one of: narrative, evidence, profile",
      "content": "string - full printable text of the document, plain text with line breaks"
    }}
  ]
}}
"""


def validate_case_draft(obj: Dict[str, Any]) -> List[Dict[str, str]]:
    """Repair model output into a list of documents; untitled items are dropped."""
    if not obj or not isinstance(obj, dict):
        return []
    docs = obj.get("documents")
    if not isinstance(docs, list):
        return []
    repaired: List[Dict[str, str]] = []
    for doc in docs:
        if not isinstance(doc, dict):
            continue
        title = str(doc.get("title", "") or "").strip()
        if not title:
            continue
        category = str(doc.get("category", "") or "").strip().lower()
        if category not in DOCUMENT_CATEGORIES:
            category = "evidence"
        repaired.append({
            "title": title,
            "summary": str(doc.get("summary", "") or "").strip(),
            "category": category,
            "content": str(doc.get("content", "") or "").strip(),
        })
    return repaired


def generate_case_documents(case, prompt: str) -> List[Dict[str, str]]:
    obj, err = llm_json(case_draft_prompt(case, prompt))
    if err or not obj:
        raise AIServiceError(err or "Generation failed")
    docs = validate_case_draft(obj)
    if not docs:
        raise AIServiceError("Model returned no documents")
    return docs
