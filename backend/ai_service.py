"""Client for the AI service used by the browser-extension endpoints."""

import json
import logging
import re
from typing import Dict, List, Optional

import requests

from constants import CATEGORIES, SUB_CATEGORY_MAP
from errors import AIServiceError
from settings import DEFAULT_ARK_MODEL


logger = logging.getLogger(__name__)

ARK_API_URL = "https://ark.cn-beijing.volces.com/api/v3/chat/completions"
OPTION_LABELS = ["A", "B", "C", "D"]
MAX_MATERIAL_IMAGES = 3
REQUEST_TIMEOUT = 120


def category_tree() -> str:
    return "; ".join(f"{cat}: {', '.join(subs)}" for cat, subs in SUB_CATEGORY_MAP.items())


def parse_model_json(text: str) -> Dict:
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.strip("`")
        if cleaned.startswith("json"):
            cleaned = cleaned[4:].strip()
    return json.loads(cleaned)


def describe_user_answer(payload: Dict) -> str:
    user_answer = payload.get("userAnswer")
    correct_answer = payload.get("correctAnswer")
    if isinstance(user_answer, int) and 0 <= user_answer <= 3:
        if user_answer == correct_answer:
            return "用户做对了这道题。"
        return f"用户错选了：{OPTION_LABELS[user_answer]}。请分析为什么用户会选这个选项（错误原因）。"
    return "请给出完整的解析。"


def build_analyze_prompt(payload: Dict) -> str:
    user_status = describe_user_answer(payload)
    if "做对" in user_status:
        focus = "用户做对了，重点总结该题型的秒杀技巧或核心公式，不需要纠错。"
    else:
        focus = "用户做错了，请详细解释错误选项的陷阱在哪里，以及如何避免。"
    material_text = payload.get("materialText")
    material_line = f"材料文本: {material_text}\n" if material_text else ""

    return (
        "你是一位经验丰富、说话通俗易懂的公考行测 AI 助手。\n\n"
        "题目信息:\n"
        f"题干: {payload.get('stem', '')}\n"
        f"选项: {' | '.join(payload.get('options') or [])}\n"
        f"{material_line}"
        f"{user_status}\n\n"
        "请严格返回 JSON 格式:\n"
        "{\n"
        f'  "category": "必须选自 [{", ".join(CATEGORIES)}]",\n'
        f'  "subCategory": "子类，参考: {category_tree()}",\n'
        '  "miniAnalysis": "解析内容，使用 HTML 格式（<p>, <b>, <span> 等标签）。'
        "风格通俗易懂，重点分析正确选项的思路。"
        f'{focus}"\n'
        "}"
    )


def material_image_url(material: str) -> str:
    if material.startswith("http") or material.startswith("data:"):
        return material
    return f"data:image/jpeg;base64,{material}"


def post_chat_completion(body: Dict, api_key: str) -> Dict:
    if not api_key:
        raise AIServiceError("API_KEY 未配置")
    try:
        response = requests.post(
            ARK_API_URL,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            json=body,
            timeout=REQUEST_TIMEOUT,
        )
    except requests.RequestException as exc:
        raise AIServiceError(f"AI service unreachable: {exc}") from exc

    if response.status_code >= 400:
        raise AIServiceError(f"AI Service Error ({response.status_code}): {response.text}")
    return response.json()


def reply_text(response_json: Dict) -> str:
    try:
        return response_json["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as exc:
        raise AIServiceError("AI response did not include a message.") from exc


def analyze_external_question(
    payload: Dict,
    api_key: str,
    model: str = DEFAULT_ARK_MODEL,
) -> Dict:
    """Classify a scraped question and write a short analysis of it."""
    content: List[Dict] = [{"type": "text", "text": build_analyze_prompt(payload)}]
    for material in (payload.get("materials") or [])[:MAX_MATERIAL_IMAGES]:
        if isinstance(material, str) and material:
            content.append({"type": "image_url", "image_url": {"url": material_image_url(material)}})

    body = {
        "model": model,
        "messages": [{"role": "user", "content": content}],
        "response_format": {"type": "json_object"},
        "temperature": 0.3,
        "thinking": {"type": "disabled"},
    }
    logger.debug("Analyze request with %d content parts", len(content))
    raw_text = reply_text(post_chat_completion(body, api_key))
    try:
        result = parse_model_json(raw_text)
    except json.JSONDecodeError as exc:
        raise AIServiceError("Failed to parse AI response") from exc
    if not isinstance(result, dict):
        raise AIServiceError("Failed to parse AI response")
    if isinstance(result.get("options"), list):
        result["options"] = strip_option_prefixes(result["options"])
    return result


def chat_with_question(
    payload: Dict,
    api_key: str,
    model: str = DEFAULT_ARK_MODEL,
) -> Dict:
    """Answer a follow-up question about one exam question."""
    system_prompt = (
        "你是一位公考行测 AI 助手。正在辅导学生做这道题：\n"
        f"题干：{payload.get('stem', '')}\n"
        f"选项：{' | '.join(payload.get('options') or [])}\n\n"
        "请解答用户的疑问。回答要简练、直接、切中要害。\n"
        "可以使用Markdown语法，例如用 **粗体** 强调重点。"
    )
    history = [
        {"role": m.get("role"), "content": m.get("content")}
        for m in payload.get("history") or []
        if isinstance(m, dict) and m.get("role") in {"user", "assistant"}
    ]
    messages = [{"role": "system", "content": system_prompt}] + history
    messages.append({"role": "user", "content": payload.get("newMessage", "")})

    body = {
        "model": model,
        "messages": messages,
        "temperature": 0.5,
        "thinking": {"type": "disabled"},
    }
    return {"reply": reply_text(post_chat_completion(body, api_key))}


def strip_option_prefixes(options: Optional[List[str]]) -> List[str]:
    return [re.sub(r"^[A-D][\.、\s]*", "", str(o)).strip() for o in options or []]
