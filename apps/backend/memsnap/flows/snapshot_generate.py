"""スナップショット生成 Flow。

学習テキスト（と任意の興味タグ）から、問題/回答/要約/たとえ/語呂合わせを
LLM で生成する。保存は行わず、呼び出し側（ルーター）が生成成功後にのみ
ストアへ書き込む。
"""

from __future__ import annotations

import hashlib
import json
import re
from typing import Any, TypedDict

from ..logging import logger
from ..models.snapshot import GeneratedContent
from ..providers import get_llm_provider
from ..providers.llm import LLMCallError
from . import END, create_state_graph

_REQUIRED_FIELDS = ("question", "answer")
_SUPPLEMENTARY_FIELDS = ("summary", "analogy", "mnemonic")
_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)
_BARE_JSON = re.compile(r"\{.*\}", re.DOTALL)


class SnapshotGenerationError(RuntimeError):
    """生成に失敗したことを表す。`reason_code` は API の detail にそのまま載る。"""

    def __init__(self, message: str, *, reason_code: str) -> None:
        super().__init__(message)
        self.reason_code = reason_code


class _SnapshotState(TypedDict, total=False):
    text: str
    interest: str | None
    prompt: str
    raw: str
    content: dict[str, str]


def placeholder_for(field: str) -> str:
    return f"(No {field} generated)"


def extract_json_object(raw: str) -> dict[str, Any] | None:
    """LLM 出力から JSON オブジェクトを取り出す。

    ```json フェンス内を優先し、無ければ最初の `{` から最後の `}` までを試す。
    """

    text = str(raw or "").strip()
    if not text:
        return None
    candidates: list[str] = []
    fenced = _FENCED_JSON.search(text)
    if fenced:
        candidates.append(fenced.group(1))
    bare = _BARE_JSON.search(text)
    if bare:
        candidates.append(bare.group(0))
    candidates.append(text)
    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    return None


class SnapshotGenerationFlow:
    """Content generation flow orchestrated with LangGraph.

    build_prompt -> generate -> parse の3ノードを直列に実行する。
    """

    def __init__(self, *, llm: Any | None = None) -> None:
        self._llm = llm

    def _prompt(self, text: str, interest: str | None) -> str:
        personalization = ""
        if interest:
            personalization = (
                f"The learner is interested in {interest}. Where it fits naturally, draw the "
                f"analogy and the mnemonic from {interest}.\n"
            )
        return (
            "You turn study material into a single flashcard.\n"
            "Read the text between <INPUT_START> and <INPUT_END> and return ONLY a JSON object "
            "with these string fields:\n"
            '- "question": one question that tests the key idea\n'
            '- "answer": a concise, correct answer to the question\n'
            '- "summary": a two or three sentence summary of the text\n'
            '- "analogy": an everyday analogy that makes the idea intuitive\n'
            '- "mnemonic": a short memory aid\n'
            + personalization
            + "Do not add any commentary outside the JSON object.\n"
            + "<INPUT_START>\n"
            + text
            + "\n<INPUT_END>"
        )

    def _parse(self, raw: str) -> dict[str, str]:
        data = extract_json_object(raw)
        if data is None:
            logger.info("snapshot_generate_json_parse_failed", raw_chars=len(raw or ""))
            raise SnapshotGenerationError(
                "LLM output was not a JSON object", reason_code="INVALID_JSON"
            )
        content: dict[str, str] = {}
        for field in _REQUIRED_FIELDS:
            value = str(data.get(field) or "").strip()
            if not value:
                logger.info("snapshot_generate_missing_field", field=field)
                raise SnapshotGenerationError(
                    f"LLM output is missing '{field}'", reason_code="MISSING_FIELD"
                )
            content[field] = value
        for field in _SUPPLEMENTARY_FIELDS:
            value = str(data.get(field) or "").strip()
            content[field] = value or placeholder_for(field)
        return content

    def run(self, text: str, interest: str | None = None) -> GeneratedContent:
        source = (text or "").strip()
        if not source:
            raise SnapshotGenerationError("text is required", reason_code="EMPTY_INPUT")
        llm = self._llm or get_llm_provider()
        logger.info(
            "snapshot_generate_start",
            text_chars=len(source),
            text_sha256=hashlib.sha256(source.encode("utf-8", errors="ignore")).hexdigest(),
            personalized=bool(interest),
        )

        def _build_prompt(state: _SnapshotState) -> _SnapshotState:
            return {"prompt": self._prompt(state["text"], state.get("interest"))}

        def _generate(state: _SnapshotState) -> _SnapshotState:
            try:
                out = llm.complete(state["prompt"])
            except LLMCallError as exc:
                raise SnapshotGenerationError(str(exc), reason_code=exc.reason_code) from exc
            raw = str(out or "").strip()
            if not raw:
                raise SnapshotGenerationError(
                    "LLM returned an empty response", reason_code="EMPTY_RESPONSE"
                )
            return {"raw": raw}

        def _parse(state: _SnapshotState) -> _SnapshotState:
            return {"content": self._parse(state["raw"])}

        graph = create_state_graph(_SnapshotState)
        graph.add_node("build_prompt", _build_prompt)
        graph.add_node("generate", _generate)
        graph.add_node("parse", _parse)
        graph.set_entry_point("build_prompt")
        graph.add_edge("build_prompt", "generate")
        graph.add_edge("generate", "parse")
        graph.add_edge("parse", END)
        out_state = graph.compile().invoke({"text": source, "interest": interest})

        content = GeneratedContent(**out_state["content"])
        logger.info(
            "snapshot_generate_complete",
            question_chars=len(content.question),
            answer_chars=len(content.answer),
        )
        return content
