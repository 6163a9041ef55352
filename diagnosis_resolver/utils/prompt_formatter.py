"""
Prompt Formatter - Model-specific chat formatting

Responsibilities:
- Detect model family from model name
- Render a chat (system + user/assistant turns) into one prompt string
- Use tokenizer chat template if available
- Fallback to manual formatting for known families

Design principles:
- Tokenizer template priority (most robust)
- Manual fallback for known families
- Generic plain-text rendering for unknown models
- Stateless formatting (no side effects)

Message format:
    [{"role": "system" | "user" | "assistant", "content": str}, ...]
"""

import logging
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

Message = Dict[str, str]


def _fold_system(messages: List[Message]) -> Tuple[Optional[str], List[Message]]:
    """Split off system messages (joined) from the chat turns."""
    system_parts = [m["content"] for m in messages if m["role"] == "system"]
    turns = [m for m in messages if m["role"] != "system"]
    return ("\n\n".join(system_parts) if system_parts else None), turns


def _with_system_in_first_user(messages: List[Message]) -> List[Message]:
    """Merge the system text into the first user turn (families without a system role)."""
    system, turns = _fold_system(messages)
    if not system:
        return turns
    if turns and turns[0]["role"] == "user":
        first = {"role": "user", "content": f"{system}\n\n{turns[0]['content']}"}
        return [first] + turns[1:]
    return [{"role": "user", "content": system}] + turns


def _format_inst(messages: List[Message]) -> str:
    parts = []
    for message in _with_system_in_first_user(messages):
        if message["role"] == "user":
            parts.append(f"[INST] {message['content']} [/INST]")
        else:
            parts.append(f" {message['content']}</s>")
    return "<s>" + "".join(parts)


def _format_llama3(messages: List[Message]) -> str:
    parts = ["<|begin_of_text|>"]
    for message in messages:
        parts.append(
            f"<|start_header_id|>{message['role']}<|end_header_id|>\n\n{message['content']}<|eot_id|>"
        )
    parts.append("<|start_header_id|>assistant<|end_header_id|>\n\n")
    return "".join(parts)


def _format_zephyr(messages: List[Message]) -> str:
    parts = [f"<|{m['role']}|>\n{m['content']}</s>\n" for m in messages]
    parts.append("<|assistant|>\n")
    return "".join(parts)


def _format_phi(messages: List[Message]) -> str:
    parts = [f"<|{m['role']}|>\n{m['content']}<|end|>\n" for m in messages]
    parts.append("<|assistant|>\n")
    return "".join(parts)


def _format_plain(messages: List[Message]) -> str:
    labels = {"system": "Instructies", "user": "Gebruiker", "assistant": "Assistent"}
    parts = [f"{labels.get(m['role'], m['role'])}: {m['content']}" for m in messages]
    parts.append("Assistent:")
    return "\n\n".join(parts)


class PromptFormatter:
    """Format chats for specific model families"""

    # Known model families and their manual chat formatting
    MANUAL_FORMATS = {
        "mistral": _format_inst,
        "mixtral": _format_inst,
        "llama": _format_inst,
        "llama-2": _format_inst,
        "llama-3": _format_llama3,
        "zephyr": _format_zephyr,
        "phi": _format_phi,
    }

    def __init__(self, model_name: str, tokenizer=None):
        """
        Initialize formatter

        Args:
            model_name: HuggingFace model identifier
            tokenizer: Optional tokenizer with chat_template attribute
        """
        self.model_name = model_name
        self.tokenizer = tokenizer
        self.model_family = self._detect_model_family(model_name)

        self.has_chat_template = (
            tokenizer is not None and
            hasattr(tokenizer, 'chat_template') and
            tokenizer.chat_template is not None
        )

        if self.has_chat_template:
            logger.info(f"Using tokenizer chat template for {model_name}")
        elif self.model_family in self.MANUAL_FORMATS:
            logger.info(f"Using manual formatting for {self.model_family} family")
        else:
            logger.warning(
                f"No chat template or known format for {model_name}. "
                f"Using plain-text rendering"
            )

    def _detect_model_family(self, model_name: str) -> str:
        """
        Detect model family from model name

        Args:
            model_name: Full model identifier

        Returns:
            str: Model family identifier
        """
        name_lower = model_name.lower()

        # Most specific first
        if "llama-3" in name_lower or "llama3" in name_lower:
            return "llama-3"
        elif "llama-2" in name_lower or "llama2" in name_lower:
            return "llama-2"
        elif "llama" in name_lower:
            return "llama"
        elif "mixtral" in name_lower:
            return "mixtral"
        elif "mistral" in name_lower:
            return "mistral"
        elif "zephyr" in name_lower:
            return "zephyr"
        elif "phi" in name_lower:
            return "phi"
        else:
            return "generic"

    def format_messages(self, messages: List[Message]) -> str:
        """
        Render a chat into a prompt ready for the model

        Priority:
        1. Tokenizer chat template (if available)
        2. Manual formatting for known family
        3. Plain-text rendering

        Args:
            messages: Chat messages, optionally starting with a system message

        Returns:
            str: Formatted prompt ending where the assistant should continue

        Raises:
            ValueError: If messages is empty or has an unknown role

        Examples:
            >>> formatter = PromptFormatter("mistralai/Mistral-7B-Instruct-v0.2")
            >>> formatter.format_messages([{"role": "user", "content": "Knie?"}])
            '<s>[INST] Knie? [/INST]'
        """
        if not messages:
            raise ValueError("messages must not be empty")
        for message in messages:
            if message.get("role") not in ("system", "user", "assistant"):
                raise ValueError(f"Unknown message role: {message.get('role')!r}")

        if self.has_chat_template:
            try:
                formatted = self.tokenizer.apply_chat_template(
                    messages,
                    tokenize=False,
                    add_generation_prompt=True
                )
                logger.debug("Applied tokenizer chat template")
                return formatted

            except Exception as e:
                # Some templates reject the system role; retry with it folded in
                logger.warning(
                    f"Tokenizer chat template failed: {e}. "
                    f"Retrying with system text folded into first user turn"
                )
                try:
                    return self.tokenizer.apply_chat_template(
                        _with_system_in_first_user(messages),
                        tokenize=False,
                        add_generation_prompt=True
                    )
                except Exception as e2:
                    logger.warning(f"Tokenizer chat template failed again: {e2}. Using manual formatting")

        if self.model_family in self.MANUAL_FORMATS:
            formatted = self.MANUAL_FORMATS[self.model_family](messages)
            logger.debug(f"Applied manual {self.model_family} formatting")
            return formatted

        logger.debug("Plain-text rendering (generic model)")
        return _format_plain(messages)

    def format_instruction(self, prompt: str) -> str:
        """Format a single user instruction."""
        return self.format_messages([{"role": "user", "content": prompt}])

    def get_info(self) -> dict:
        """
        Get formatter information

        Returns:
            dict: Formatter metadata
        """
        return {
            "model_name": self.model_name,
            "model_family": self.model_family,
            "has_chat_template": self.has_chat_template,
            "formatting_method": (
                "tokenizer_template" if self.has_chat_template
                else "manual" if self.model_family in self.MANUAL_FORMATS
                else "plain"
            )
        }
