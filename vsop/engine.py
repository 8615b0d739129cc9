from __future__ import annotations

import functools
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, fields
from typing import Any, Sequence

from .languages import resolve_pair
from .prompt_templates import PromptTemplate, resolve_template

DEFAULT_MAX_NEW_TOKENS = 4096
DEFAULT_TEMPERATURE = 0.0
DEFAULT_TOP_P = 0.98
DEFAULT_TOP_K = 0
DEFAULT_NO_REPEAT_NGRAM = 4
DEFAULT_NO_REPEAT_WINDOW = 128
ERROR_SNIPPET_LIMIT = 20


class TranslationError(RuntimeError):
    """A batch could not be translated."""


class TranslationEngine(ABC):
    """An initialized translator with a fixed configuration.

    Implementations need not be thread-safe; the server never calls
    :meth:`translate_batch` concurrently.
    """

    @abstractmethod
    def translate_batch(self, units: Sequence[str]) -> list[str]:
        """Translate every unit in order, or raise :class:`TranslationError`.

        The result has one entry per unit. Empty units map to empty strings.
        """
        raise NotImplementedError

    def describe(self) -> dict[str, Any]:
        return {"engine": type(self).__name__}


@dataclass(frozen=True)
class GenerationOptions:
    max_new_tokens: int = DEFAULT_MAX_NEW_TOKENS
    temperature: float = DEFAULT_TEMPERATURE
    top_p: float = DEFAULT_TOP_P
    top_k: int = DEFAULT_TOP_K
    no_repeat_ngram: int = DEFAULT_NO_REPEAT_NGRAM
    no_repeat_window: int = DEFAULT_NO_REPEAT_WINDOW
    no_chat_template: bool = False

    @classmethod
    def resolve(
        cls, template: PromptTemplate | None = None, **overrides: Any
    ) -> GenerationOptions:
        """Build options from model family defaults and explicit overrides.

        Overrides that are None fall back to the family default, then to the
        class default.
        """
        names = {f.name for f in fields(cls)}
        values: dict[str, Any] = {}
        if template is not None:
            values.update(
                (k, v) for k, v in template.generation_defaults().items() if k in names
            )
        values.update((k, v) for k, v in overrides.items() if v is not None)
        return cls(**values)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@functools.lru_cache(maxsize=4)
def _load_model(model: str, trust_remote_code: bool):
    from mlx_lm import load

    template = resolve_template(model)
    model_config = template.model_config(trust_remote_code)
    tokenizer_config = template.tokenizer_config(trust_remote_code)
    loaded = load(
        model,
        model_config=model_config or None,
        tokenizer_config=tokenizer_config or None,
    )
    model_obj = loaded[0]
    tokenizer = loaded[1]
    template.configure_tokenizer(tokenizer)
    return model_obj, tokenizer, template


def _make_no_repeat_ngram_processor(ngram_size: int, window_size: int):
    import mlx.core as mx

    ngram_size = int(ngram_size)
    window_size = int(window_size) if window_size else 0

    def processor(tokens, logits):
        token_list = tokens.tolist()
        if window_size > 0:
            token_list = token_list[-window_size:]
        if len(token_list) < ngram_size:
            return logits
        prefix = token_list[-(ngram_size - 1):]
        banned = {
            token_list[idx + ngram_size - 1]
            for idx in range(len(token_list) - ngram_size + 1)
            if token_list[idx : idx + ngram_size - 1] == prefix
        }
        if not banned:
            return logits
        logits[:, list(banned)] = mx.array(-float("inf"), logits.dtype)
        return logits

    return processor


def _generation_kwargs(options: GenerationOptions) -> dict[str, Any]:
    gen_kwargs: dict[str, Any] = {"max_tokens": options.max_new_tokens}
    if (
        (options.temperature and options.temperature > 0)
        or (options.top_p and options.top_p < 1.0)
        or (options.top_k and options.top_k > 0)
    ):
        from mlx_lm.sample_utils import make_sampler

        gen_kwargs["sampler"] = make_sampler(
            temp=options.temperature,
            top_p=options.top_p,
            top_k=options.top_k,
        )
    if options.no_repeat_ngram and options.no_repeat_ngram > 1:
        gen_kwargs["logits_processors"] = [
            _make_no_repeat_ngram_processor(
                options.no_repeat_ngram, options.no_repeat_window
            )
        ]
    return gen_kwargs


def _generate_text(
    model: Any, tokenizer: Any, prompt: str, options: GenerationOptions
) -> str:
    from mlx_lm.generate import generate

    return generate(model, tokenizer, prompt, **_generation_kwargs(options))


class MLXEngine(TranslationEngine):
    """Translates units one by one with an MLX language model."""

    def __init__(
        self,
        model_name: str,
        *,
        input_lang: str | None = None,
        output_lang: str | None = None,
        options: GenerationOptions | None = None,
        trust_remote_code: bool = True,
    ) -> None:
        self.model_name = model_name
        self.input_lang = input_lang
        self.output_lang = output_lang
        self._model, self._tokenizer, self.template = _load_model(
            model_name, trust_remote_code
        )
        self.options = options or GenerationOptions.resolve(self.template)

    def describe(self) -> dict[str, Any]:
        return {
            "engine": type(self).__name__,
            "model": self.model_name,
            "input_lang": self.input_lang or "auto",
            "output_lang": self.output_lang or "auto",
            "options": self.options.as_dict(),
        }

    def translate_batch(self, units: Sequence[str]) -> list[str]:
        return [self._translate_unit(unit) for unit in units]

    def _translate_unit(self, unit: str) -> str:
        if not unit.strip():
            return ""
        try:
            src_lang, tgt_lang = resolve_pair(unit, self.input_lang, self.output_lang)
            prompt = self.template.render(
                self._tokenizer,
                src_lang,
                tgt_lang,
                unit,
                no_chat_template=self.options.no_chat_template,
            )
            return _generate_text(self._model, self._tokenizer, prompt, self.options).strip()
        except Exception as exc:
            raise TranslationError(
                f"failed to translate {unit[:ERROR_SNIPPET_LIMIT]!r}: {exc}"
            ) from exc
