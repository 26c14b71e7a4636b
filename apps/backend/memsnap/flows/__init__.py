"""Flow 基盤ユーティリティ。LLM 呼び出しを LangGraph の StateGraph で組み立てる。"""

from typing import Any

from langgraph.graph import END, StateGraph


def create_state_graph(state_schema: Any) -> StateGraph:
    """`state_schema`（TypedDict）を状態とする StateGraph を生成する。"""

    return StateGraph(state_schema)


__all__ = ["END", "StateGraph", "create_state_graph"]
