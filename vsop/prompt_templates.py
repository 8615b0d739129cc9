from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from .languages import lang_name

DEFAULT_MODEL = "hotchpotch/CAT-Translate-0.8b-mlx-q4"
MODEL_ALIAS_MAP = {
    "cat": "hotchpotch/CAT-Translate-1.8b-mlx-q8",
    "plamo": "mlx-community/plamo-2-translate",
}

CAT_PROMPT_TEMPLATE = (
    "Translate the following {src_lang} text into {tgt_lang}.\n\n{src_text}"
)

PLAMO_CHAT_TEMPLATE = (
    "{{- \"<|plamo:op|>dataset\\ntranslation\\n\" -}}\n"
    "{% for message in messages %}\n"
    "    {{- '<|plamo:op|>' + message['content']}}\n"
    "    {%- if not loop.last %}\n"
    "        {{- '\\n'}}\n"
    "    {%- endif %}\n"
    "{% endfor %}\n"
)
PLAMO_OP = "<|plamo:op|>"


def _remote_code(trust_remote_code: bool) -> dict[str, Any]:
    return {"trust_remote_code": True} if trust_remote_code else {}


class PromptTemplate(ABC):
    """Turns one unit into the prompt expected by a model family."""

    add_generation_prompt: bool = True

    @classmethod
    @abstractmethod
    def supports(cls, model_name: str) -> bool:
        raise NotImplementedError

    def tokenizer_config(self, trust_remote_code: bool) -> dict[str, Any]:
        return _remote_code(trust_remote_code)

    def model_config(self, trust_remote_code: bool) -> dict[str, Any]:
        return _remote_code(trust_remote_code)

    def configure_tokenizer(self, tokenizer: Any) -> None:
        return

    @abstractmethod
    def messages(self, src_lang: str, tgt_lang: str, text: str) -> list[dict[str, str]]:
        raise NotImplementedError

    @abstractmethod
    def plain_prompt(self, src_lang: str, tgt_lang: str, text: str) -> str:
        raise NotImplementedError

    def render(
        self,
        tokenizer: Any,
        src_lang: str,
        tgt_lang: str,
        text: str,
        *,
        no_chat_template: bool = False,
    ) -> str:
        if no_chat_template or not hasattr(tokenizer, "apply_chat_template"):
            return self.plain_prompt(src_lang, tgt_lang, text)
        return tokenizer.apply_chat_template(
            self.messages(src_lang, tgt_lang, text),
            add_generation_prompt=self.add_generation_prompt,
            tokenize=False,
        )

    def generation_defaults(self) -> dict[str, Any]:
        return {}


class CatTemplate(PromptTemplate):
    @classmethod
    def supports(cls, model_name: str) -> bool:
        return "cat-translate" in model_name.lower()

    def plain_prompt(self, src_lang: str, tgt_lang: str, text: str) -> str:
        return CAT_PROMPT_TEMPLATE.format(
            src_lang=lang_name(src_lang),
            tgt_lang=lang_name(tgt_lang),
            src_text=text,
        )

    def messages(self, src_lang: str, tgt_lang: str, text: str) -> list[dict[str, str]]:
        return [{"role": "user", "content": self.plain_prompt(src_lang, tgt_lang, text)}]


class PlamoTemplate(PromptTemplate):
    # PLaMo ships no generation prompt; its op markers are rendered directly.
    add_generation_prompt = False

    @classmethod
    def supports(cls, model_name: str) -> bool:
        lowered = model_name.lower()
        return "plamo-2-translate" in lowered or "plamo_translate" in lowered

    def tokenizer_config(self, trust_remote_code: bool) -> dict[str, Any]:
        return {**_remote_code(trust_remote_code), "chat_template": PLAMO_CHAT_TEMPLATE}

    def configure_tokenizer(self, tokenizer: Any) -> None:
        add_eos = getattr(tokenizer, "add_eos_token", None)
        if callable(add_eos):
            add_eos(PLAMO_OP)

    def messages(self, src_lang: str, tgt_lang: str, text: str) -> list[dict[str, str]]:
        return [
            {"role": "user", "content": f"input lang={lang_name(src_lang)}\n{text.strip()}"},
            {"role": "user", "content": f"output lang={lang_name(tgt_lang)}\n"},
        ]

    def plain_prompt(self, src_lang: str, tgt_lang: str, text: str) -> str:
        ops = [PLAMO_OP + m["content"] for m in self.messages(src_lang, tgt_lang, text)]
        return PLAMO_OP + "dataset\ntranslation\n" + "\n".join(ops)

    def render(
        self,
        tokenizer: Any,
        src_lang: str,
        tgt_lang: str,
        text: str,
        *,
        no_chat_template: bool = False,
    ) -> str:
        return self.plain_prompt(src_lang, tgt_lang, text)

    def generation_defaults(self) -> dict[str, Any]:
        return {"temperature": 0.0, "top_p": 0.98, "top_k": 0}


def resolve_model_alias(model_name: str | None, default: str = DEFAULT_MODEL) -> str:
    if model_name is None or not model_name.strip():
        return default
    return MODEL_ALIAS_MAP.get(model_name.strip().lower(), model_name)


def resolve_template(model_name: str) -> PromptTemplate:
    for template_cls in (PlamoTemplate, CatTemplate):
        if template_cls.supports(model_name):
            return template_cls()
    return CatTemplate()
