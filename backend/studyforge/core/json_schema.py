from __future__ import annotations


_DIFFICULTY = {"type": "string", "enum": ["easy", "medium", "hard"]}

# LLM 输出 JSON Schema：单个 chunk 的学习内容
GENERATION_OUTPUT_SCHEMA = {
    "type": "object",
    "required": ["flashcards", "mcqs", "frqs"],
    "properties": {
        "summary": {"type": "string"},
        "category": {"type": "string"},
        "flashcards": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["front", "back"],
                "properties": {
                    "front": {"type": "string", "minLength": 1},
                    "back": {"type": "string", "minLength": 1},
                    "topic": {"type": "string"},
                },
            },
        },
        "mcqs": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["question", "options", "correctOptionIndex"],
                "properties": {
                    "question": {"type": "string", "minLength": 1},
                    "options": {"type": "array", "items": {"type": "string"}, "minItems": 2},
                    "correctOptionIndex": {"type": "integer", "minimum": 0},
                    "explanation": {"type": "string"},
                    "topic": {"type": "string"},
                    "difficulty": _DIFFICULTY,
                },
            },
        },
        "frqs": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["question", "answers"],
                "properties": {
                    "question": {"type": "string", "minLength": 1},
                    "answers": {"type": "array", "items": {"type": "string"}},
                    "caseSensitive": {"type": "boolean"},
                    "explanation": {"type": "string"},
                    "topic": {"type": "string"},
                    "difficulty": _DIFFICULTY,
                },
            },
        },
    },
}

# LLM 输出 JSON Schema：概念图谱
MIND_MAP_SCHEMA = {
    "type": "object",
    "required": ["nodes", "connections"],
    "properties": {
        "nodes": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["id", "label"],
                "properties": {
                    "id": {"type": "string"},
                    "label": {"type": "string"},
                    "type": {"type": "string", "enum": ["main", "subtopic", "detail"]},
                },
            },
        },
        "connections": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["source", "target"],
                "properties": {
                    "source": {"type": "string"},
                    "target": {"type": "string"},
                    "label": {"type": "string"},
                    "type": {"type": "string", "enum": ["hierarchical", "related", "dependency"]},
                },
            },
        },
    },
}
