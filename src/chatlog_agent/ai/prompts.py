"""Prompt templates for the chat-log agent.

Every user-facing string the engine sends to the model lives here, keyed by
locale. ``zh-CN`` and ``en-US`` are supported; any other locale falls back to
``zh-CN``.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Mapping, Sequence

from .orchestration.types import ChatType, OwnerInfo, PromptConfig

DEFAULT_LOCALE = "zh-CN"
SUPPORTED_LOCALES = ("zh-CN", "en-US")

AUTO_SEARCH_MAX_ITEMS = 8

_WEEKDAYS = {
    "zh-CN": ("星期一", "星期二", "星期三", "星期四", "星期五", "星期六", "星期日"),
    "en-US": ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"),
}
_MONTHS_EN = (
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
)

_CONTENT: dict[str, dict[str, Any]] = {
    "zh-CN": {
        "current_date_is": "当前日期是",
        "sentence_end": "。",
        "chat_label": {"private": "私聊", "group": "群聊"},
        "chat_context": {"private": "对话", "group": "群聊"},
        "owner_note": (
            "当前用户身份：\n"
            "- 用户在{context}中的身份是「{name}」（platformId: {platform_id}）\n"
            "- 当用户提到\"我\"、\"我的\"时，指的就是「{name}」\n"
            "- 查询\"我\"的发言时，使用 sender_id 参数筛选该成员\n"
        ),
        "member_note_private": (
            "成员查询策略：\n"
            "- 私聊只有两个人，可以直接获取成员列表\n"
            "- 当用户提到\"对方\"、\"他/她\"时，通过 get_group_members 获取另一方信息\n"
        ),
        "member_note_group": (
            "成员查询策略：\n"
            "- 当用户提到特定群成员（如\"张三说过什么\"、\"小明的发言\"等）时，应先调用 get_group_members 获取成员列表\n"
            "- 群成员有三种名称：accountName（原始昵称）、groupNickname（群昵称）、aliases（用户自定义别名）\n"
            "- 通过 get_group_members 的 search 参数可以模糊搜索这三种名称\n"
            "- 找到成员后，使用其 id 字段作为 search_messages 的 sender_id 参数来获取该成员的发言\n"
        ),
        "time_params_intro": "时间参数：按用户提到的精度组合 year/month/day/hour",
        "time_examples": (
            "\"10月\" → year: {year}, month: 10",
            "\"10月1号\" → year: {year}, month: 10, day: 1",
            "\"10月1号下午3点\" → year: {year}, month: 10, day: 1, hour: 15",
        ),
        "default_year_note": "未指定年份默认{year}年，若该月份未到则用{prev_year}年",
        "response_instruction": "根据用户的问题，选择合适的工具获取数据，然后基于数据给出回答。",
        "response_rules_title": "回答要求：",
        "fallback_role": "你是一个专业的{label}记录分析助手。\n你的任务是帮助用户理解和分析他们的{label}记录数据。",
        "fallback_rules": (
            "1. 基于工具返回的数据回答，不要编造信息\n"
            "2. 如果数据不足以回答问题，请说明\n"
            "3. 回答要简洁明了，使用 Markdown 格式"
        ),
        "rewrite_system": (
            "你是一个“检索查询改写器”。只输出 JSON，不要输出任何额外文字。\n"
            "输出格式：\n"
            "{\"query\": string, \"top_k\": number, \"candidate_limit\": number}\n"
            "要求：\n"
            "- query 要尽量覆盖用户意图：关键词 + 同义词 + 可能出现的聊天原话片段（短语）\n"
            "- top_k 默认 5（可根据问题复杂度 5-20）\n"
            "- candidate_limit 默认 200（可根据问题复杂度 100-500）\n"
            "- 如果用户问题很短/含糊，也要把 query 写具体（例如补上“进展/情况/有没有/是否/能恢复”等）\n"
        ),
        "rewrite_user": "用户问题：{message}\n请生成用于语义检索的 JSON：",
        "evidence_block": (
            "【语义检索证据（{tool}）】\n"
            "检索query：{query}\n"
            "top_k：{top_k}，candidate_limit：{candidate_limit}\n"
            "\n"
            "检索结果（按相关度）：\n"
            "{results}\n"
            "\n"
            "回答要求：\n"
            "- 必须优先依据上述证据回答\n"
            "- 如果证据不足，说明“不足”并给出下一步应检索什么\n"
        ),
        "auto_evidence_header": "【语义检索结果】\n查询：{query}",
        "auto_evidence_footer": "（以上为系统自动从聊天记录中检索到的高相关消息，请基于这些证据回答。）",
        "budget_exhausted": "请根据已获取的信息给出回答，不要再调用工具。",
        "tool_error_prefix": "错误: ",
    },
    "en-US": {
        "current_date_is": "Current date is",
        "sentence_end": ".",
        "chat_label": {"private": "private chat", "group": "group chat"},
        "chat_context": {"private": "conversation", "group": "group chat"},
        "owner_note": (
            "Current user identity:\n"
            "- The user's identity in this {context} is \"{name}\" (platformId: {platform_id})\n"
            "- When the user refers to \"I\" or \"my\", it refers to \"{name}\"\n"
            "- When querying \"my\" messages, use the sender_id parameter to filter for this member\n"
        ),
        "member_note_private": (
            "Member query strategy:\n"
            "- Private chats only have two participants, so the member list can be directly obtained\n"
            "- When the user refers to \"the other party\" or \"he/she\", get the other participant's "
            "information via get_group_members\n"
        ),
        "member_note_group": (
            "Member query strategy:\n"
            "- When the user refers to specific group members (e.g., \"what did John say\", \"Mary's messages\"), "
            "first call get_group_members to get the member list\n"
            "- Group members have three names: accountName (original nickname), groupNickname (group nickname), "
            "aliases (user-defined aliases)\n"
            "- The search parameter of get_group_members can be used for fuzzy searching these three names\n"
            "- Once a member is found, use their id field as the sender_id parameter for search_messages "
            "to retrieve their messages\n"
        ),
        "time_params_intro": "Time parameters: combine year/month/day/hour based on user mention",
        "time_examples": (
            "\"October\" → year: {year}, month: 10",
            "\"October 1st\" → year: {year}, month: 10, day: 1",
            "\"October 1st 3 PM\" → year: {year}, month: 10, day: 1, hour: 15",
        ),
        "default_year_note": (
            "If year is not specified, defaults to {year}. If the month has not yet occurred, {prev_year} is used."
        ),
        "response_instruction": (
            "Based on the user's question, select appropriate tools to retrieve data, "
            "then provide an answer based on the data."
        ),
        "response_rules_title": "Response requirements:",
        "fallback_role": (
            "You are a professional {label} analysis assistant.\n"
            "Your task is to help users understand and analyze their {label} data."
        ),
        "fallback_rules": (
            "1. Answer based on data returned by tools, do not fabricate information\n"
            "2. If data is insufficient to answer, please state so\n"
            "3. Keep answers concise and clear, use Markdown format"
        ),
        "rewrite_system": (
            "You rewrite questions into retrieval queries. Output JSON only, with no extra text.\n"
            "Format:\n"
            "{\"query\": string, \"top_k\": number, \"candidate_limit\": number}\n"
            "Rules:\n"
            "- query should cover the user's intent: keywords, synonyms and phrases likely to appear in the chat\n"
            "- top_k defaults to 5 (5-20 depending on complexity)\n"
            "- candidate_limit defaults to 200 (100-500 depending on complexity)\n"
            "- If the question is short or vague, still make the query specific\n"
        ),
        "rewrite_user": "User question: {message}\nGenerate the JSON for semantic retrieval:",
        "evidence_block": (
            "[Semantic retrieval evidence ({tool})]\n"
            "Query: {query}\n"
            "top_k: {top_k}, candidate_limit: {candidate_limit}\n"
            "\n"
            "Results (by relevance):\n"
            "{results}\n"
            "\n"
            "Answer requirements:\n"
            "- Ground your answer in the evidence above first\n"
            "- If the evidence is insufficient, say so and suggest what to search next\n"
        ),
        "auto_evidence_header": "[Semantic search results]\nQuery: {query}",
        "auto_evidence_footer": (
            "(The messages above were retrieved automatically from the chat history; "
            "answer based on this evidence.)"
        ),
        "budget_exhausted": "Please answer based on the information already gathered, without calling any more tools.",
        "tool_error_prefix": "Error: ",
    },
}


def resolve_locale(locale: str | None) -> str:
    return locale if locale in _CONTENT else DEFAULT_LOCALE


def _content(locale: str | None) -> Mapping[str, Any]:
    return _CONTENT[resolve_locale(locale)]


def format_current_date(now: datetime, locale: str | None = DEFAULT_LOCALE) -> str:
    """Render ``now`` as a long date with weekday."""
    resolved = resolve_locale(locale)
    weekday = _WEEKDAYS[resolved][now.weekday()]
    if resolved == "zh-CN":
        return f"{now.year}年{now.month}月{now.day}日{weekday}"
    return f"{weekday}, {_MONTHS_EN[now.month - 1]} {now.day}, {now.year}"


def fallback_role_definition(chat_type: ChatType, locale: str | None = DEFAULT_LOCALE) -> str:
    content = _content(locale)
    return content["fallback_role"].format(label=content["chat_label"][chat_type])


def fallback_response_rules(locale: str | None = DEFAULT_LOCALE) -> str:
    return _content(locale)["fallback_rules"]


def locked_prompt_section(
    chat_type: ChatType,
    owner_info: OwnerInfo | None,
    locale: str | None = DEFAULT_LOCALE,
    now: datetime | None = None,
) -> str:
    """The non-editable part of the system prompt.

    Tool schemas travel through the ``tools`` request parameter, so they are
    not repeated here.
    """
    content = _content(locale)
    now = now or datetime.now()
    year = now.year

    owner_note = ""
    if owner_info is not None:
        owner_note = content["owner_note"].format(
            context=content["chat_context"][chat_type],
            name=owner_info.display_name,
            platform_id=owner_info.platform_id,
        )
    member_note = content["member_note_private"] if chat_type == "private" else content["member_note_group"]
    examples = "\n".join(f"- {example.format(year=year)}" for example in content["time_examples"])

    return (
        f"{content['current_date_is']} {format_current_date(now, locale)}{content['sentence_end']}\n"
        f"{owner_note}\n"
        f"{member_note}\n"
        f"{content['time_params_intro']}\n"
        f"{examples}\n"
        f"{content['default_year_note'].format(year=year, prev_year=year - 1)}\n"
        "\n"
        f"{content['response_instruction']}"
    )


def build_system_prompt(
    chat_type: ChatType = "group",
    prompt_config: PromptConfig | None = None,
    owner_info: OwnerInfo | None = None,
    locale: str | None = DEFAULT_LOCALE,
    now: datetime | None = None,
) -> str:
    """Assemble the full system prompt.

    The role definition and response rules come from ``prompt_config`` when
    set, otherwise from the localized fallbacks. The locked section between
    them is always generated.
    """
    content = _content(locale)
    role_definition = (prompt_config.role_definition if prompt_config else "") or fallback_role_definition(
        chat_type, locale
    )
    response_rules = (prompt_config.response_rules if prompt_config else "") or fallback_response_rules(locale)
    locked = locked_prompt_section(chat_type, owner_info, locale, now)
    return f"{role_definition}\n\n{locked}\n\n{content['response_rules_title']}\n{response_rules}"


# -----------------------------------------------------------------------------
# Retrieval prompts
# -----------------------------------------------------------------------------


def rewrite_messages(user_message: str, locale: str | None = DEFAULT_LOCALE) -> tuple[str, str]:
    """System and user text for the isolated query-rewrite call."""
    content = _content(locale)
    return content["rewrite_system"], content["rewrite_user"].format(message=user_message)


def format_evidence_block(
    tool_name: str,
    query: str,
    top_k: int,
    candidate_limit: int,
    result: Any,
    locale: str | None = DEFAULT_LOCALE,
) -> str:
    return _content(locale)["evidence_block"].format(
        tool=tool_name,
        query=query,
        top_k=top_k,
        candidate_limit=candidate_limit,
        results=json.dumps(result, ensure_ascii=False, indent=2, default=str),
    )


def format_auto_search_evidence(
    query: str,
    items: Sequence[Mapping[str, Any]],
    locale: str | None = DEFAULT_LOCALE,
) -> str:
    """Numbered evidence lines with percentage scores, at most eight."""
    content = _content(locale)
    lines: list[str] = []
    for position, item in enumerate(items[:AUTO_SEARCH_MAX_ITEMS], start=1):
        score = item.get("score")
        score_text = f"{score * 100:.1f}%" if isinstance(score, (int, float)) and not isinstance(score, bool) else ""
        lines.append(f"{position}. {score_text} {item.get('message') or ''}".strip())
    header = content["auto_evidence_header"].format(query=query)
    return "\n".join([header, *lines, content["auto_evidence_footer"]])


def budget_exhausted_instruction(locale: str | None = DEFAULT_LOCALE) -> str:
    return _content(locale)["budget_exhausted"]


def tool_error_prefix(locale: str | None = DEFAULT_LOCALE) -> str:
    return _content(locale)["tool_error_prefix"]
