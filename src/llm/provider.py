"""Text-completion providers that stream tokens into the tutoring session."""
from __future__ import annotations

import asyncio
import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence

from transcript.normalizer import extract_delta

logger = logging.getLogger(__name__)


class CompletionProvider(Protocol):
    """Anything that turns (system instruction, chat history) into a token stream.

    ``history`` is a list of ``{"role": "user" | "assistant", "content": str}``
    dicts in chronological order; the learner's latest turn is the last item.
    The stream may raise at any point.
    """

    def stream(
        self,
        system_instruction: str,
        history: Sequence[Dict[str, str]],
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[str]: ...


@dataclass
class Sampling:
    max_tokens: int = 512
    temperature: float = 0.7
    top_p: float = 0.95
    top_k: int = 50
    repeat_penalty: float = 1.1
    stop: Optional[List[str]] = None


class _Failure:
    def __init__(self, exc: BaseException) -> None:
        self.exc = exc


_DONE = object()


def build_messages(system_instruction: str, history: Sequence[Dict[str, str]]) -> List[Dict[str, str]]:
    msgs: List[Dict[str, str]] = [{"role": "system", "content": (system_instruction or "").strip()}]
    for m in history:
        content = (m.get("content") or "").strip()
        if content and m.get("role") in ("user", "assistant"):
            msgs.append({"role": m["role"], "content": content})
    return msgs


def render_prompt(messages: List[Dict[str, str]]) -> str:
    """Instruct-style prompt for llama.cpp builds without chat completion support."""
    lines: List[str] = []
    sys = "\n".join(m["content"] for m in messages if m["role"] == "system").strip()
    if sys:
        lines.append("### System\n" + sys + "\n")
    for m in messages:
        if m["role"] == "user":
            lines.append("### User\n" + m["content"] + "\n")
        elif m["role"] == "assistant":
            lines.append("### Assistant\n" + m["content"] + "\n")
    lines.append("### Assistant\n")
    return "\n".join(lines)


class LlamaCppProvider:
    """
    Streams tokens from a local GGUF model through llama.cpp.

    llama.cpp generates on a blocking iterator, so generation runs on a
    worker thread and hands chunks to the event loop through an
    ``asyncio.Queue``. Closing the async iterator early (the consumer
    breaks out) stops the worker at the next chunk.

    Notes:
        - Prefers ``create_chat_completion`` (model's own chat template),
          falls back to ``create_completion`` on a rendered prompt.
        - Auto-threads and GPU offload detection.
        - Retries without mmap if the filesystem rejects memory-mapping.
    """

    def __init__(
        self,
        model_path: str,
        *,
        n_ctx: int = 4096,
        n_threads: Optional[int] = None,
        n_gpu_layers: Optional[int] = None,
        use_mmap: bool = True,
        sampling: Optional[Sampling] = None,
    ) -> None:
        # Import llama lazily so the server can run with a different provider.
        from llama_cpp import Llama, llama_supports_gpu_offload  # type: ignore

        if n_threads is None or int(n_threads) <= 0:
            n_threads = os.cpu_count() or 1

        if n_gpu_layers is None:
            try:
                n_gpu_layers = -1 if llama_supports_gpu_offload() else 0
            except Exception:
                n_gpu_layers = 0

        llm_kwargs: Dict[str, Any] = dict(
            model_path=str(model_path),
            n_ctx=int(n_ctx),
            n_threads=int(n_threads),
            n_gpu_layers=int(n_gpu_layers),
            verbose=False,
            use_mmap=bool(use_mmap),
        )

        try:
            self.llm = Llama(**llm_kwargs)
        except OSError as e:
            if llm_kwargs["use_mmap"]:
                logger.warning("mmap load failed, retrying without mmap: %s", e)
                llm_kwargs["use_mmap"] = False
                self.llm = Llama(**llm_kwargs)
            else:
                logger.exception("Failed to load model: %s", e)
                raise

        self.sampling = sampling or Sampling()
        self.default_stops = ["</s>", "###", "User:", "Assistant:"]
        self._supports_chat = hasattr(self.llm, "create_chat_completion")

    def _iter_chunks(self, messages: List[Dict[str, str]], max_tokens: int):
        s = self.sampling
        args = dict(
            max_tokens=int(max_tokens),
            temperature=float(s.temperature),
            top_p=float(s.top_p),
            top_k=int(s.top_k),
            repeat_penalty=float(s.repeat_penalty),
            stream=True,
        )
        if self._supports_chat:
            if s.stop:
                args["stop"] = list(s.stop)
            return self.llm.create_chat_completion(messages=messages, **args)  # type: ignore[attr-defined]
        args["stop"] = list(s.stop or self.default_stops)
        return self.llm.create_completion(prompt=render_prompt(messages), **args)  # type: ignore[attr-defined]

    async def stream(
        self,
        system_instruction: str,
        history: Sequence[Dict[str, str]],
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[str]:
        messages = build_messages(system_instruction, history)
        limit = max_tokens or self.sampling.max_tokens
        loop = asyncio.get_running_loop()
        queue: "asyncio.Queue[Any]" = asyncio.Queue()
        stop = threading.Event()

        def produce() -> None:
            try:
                for chunk in self._iter_chunks(messages, limit):
                    if stop.is_set():
                        break
                    loop.call_soon_threadsafe(queue.put_nowait, chunk)
            except Exception as e:
                loop.call_soon_threadsafe(queue.put_nowait, _Failure(e))
            finally:
                loop.call_soon_threadsafe(queue.put_nowait, _DONE)

        worker = loop.run_in_executor(None, produce)
        try:
            while True:
                item = await queue.get()
                if item is _DONE:
                    break
                if isinstance(item, _Failure):
                    raise item.exc
                token = extract_delta(item)
                if token:
                    yield token
        finally:
            stop.set()
            if worker.done():
                worker.result()


def create_from_config(cfg: Dict[str, Any]) -> LlamaCppProvider:
    """Create a LlamaCppProvider from the ``model`` section of a config dict."""
    m = (cfg or {}).get("model", {}) if isinstance(cfg, dict) else {}
    model_dir = m.get("model_dir", "models")
    model_path = m.get("model_path")
    if not model_path:
        raise FileNotFoundError("No model.model_path configured.")
    model_file = Path(model_path) if Path(model_path).is_absolute() else Path(model_dir) / model_path
    if not model_file.exists():
        raise FileNotFoundError(f"Model file not found: {model_file}")

    sampling = Sampling(
        max_tokens=int(m.get("max_tokens", 512)),
        temperature=float(m.get("temperature", 0.7)),
        top_p=float(m.get("top_p", 0.95)),
        top_k=int(m.get("top_k", 50)),
        repeat_penalty=float(m.get("repeat_penalty", 1.1)),
        stop=m.get("stop"),
    )
    return LlamaCppProvider(
        str(model_file),
        n_ctx=int(m.get("n_ctx", 4096)),
        n_threads=m.get("n_threads"),
        n_gpu_layers=m.get("n_gpu_layers"),
        use_mmap=bool(m.get("use_mmap", True)),
        sampling=sampling,
    )
