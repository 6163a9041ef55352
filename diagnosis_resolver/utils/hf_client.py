"""
HuggingFace Client - Model loading and inference wrapper

Responsibilities:
- Load model with optional 4-bit quantization
- Generate text completions from a chat (system + turns)
- Generate JSON object completions with repair
- Map CUDA and parse failures onto GenerativeServiceError
- Optional diagnostics (token counts, latency)

Design principles:
- Dependency injection (no singleton)
- Fail fast on load errors
- Generation errors surface as GenerativeServiceError so the
  orchestrator can classify and retry them
- Model-agnostic (formatting lives in PromptFormatter)

Thread safety:
    generate() is called from a worker thread (asyncio.to_thread). A lock
    serializes generation so concurrent resolutions share one model.
"""

import logging
import threading
import time
from typing import Any, Dict, List, Optional

import torch
from transformers import AutoModelForCausalLM, AutoTokenizer, BitsAndBytesConfig

from diagnosis_resolver.exceptions import GenerativeServiceError
from diagnosis_resolver.utils.json_repair import parse_json_object
from diagnosis_resolver.utils.prompt_formatter import PromptFormatter

logger = logging.getLogger(__name__)

DEVICE_CUDA = "cuda"
DEVICE_CPU = "cpu"
DEVICE_MAP_AUTO = "auto"

# Status reported when the GPU runs out of memory mid-request
STATUS_RESOURCE_EXHAUSTED = 503


class HuggingFaceClient:
    """Wrapper for HuggingFace model inference"""

    def __init__(
        self,
        model_name: str,
        load_in_4bit: bool = True,
        device: str = DEVICE_CUDA
    ) -> None:
        """
        Initialize model and tokenizer

        Args:
            model_name: HuggingFace model identifier
            load_in_4bit: Use 4-bit quantization (CUDA only, needs bitsandbytes)
            device: Device to use ("cuda" or "cpu")

        Raises:
            RuntimeError: If CUDA requested but not available
            Exception: If model loading fails
        """
        self.model_name = model_name
        self.device = device
        self._generate_lock = threading.Lock()

        if device == DEVICE_CUDA and not torch.cuda.is_available():
            raise RuntimeError("CUDA requested but not available. Check nvidia-smi.")

        logger.info(f"Loading model: {model_name}")
        logger.info(f"4-bit quantization: {load_in_4bit}")
        logger.info(f"Device: {device}")

        quantization_config = None
        if load_in_4bit and device == DEVICE_CUDA:
            quantization_config = BitsAndBytesConfig(
                load_in_4bit=True,
                bnb_4bit_quant_type="nf4",
                bnb_4bit_compute_dtype=torch.bfloat16,
                bnb_4bit_use_double_quant=True
            )
            logger.info("Using NF4 quantization with bfloat16 compute")

        try:
            self.tokenizer = AutoTokenizer.from_pretrained(model_name)

            if self.tokenizer.pad_token is None:
                if self.tokenizer.eos_token is not None:
                    self.tokenizer.pad_token = self.tokenizer.eos_token
                    logger.info("Set pad_token to eos_token")
                else:
                    self.tokenizer.add_special_tokens({'pad_token': '[PAD]'})
                    logger.warning("Added new [PAD] token as pad_token")

            logger.info("Tokenizer loaded successfully")

        except Exception as e:
            logger.error(f"Failed to load tokenizer: {e}")
            raise

        self.formatter = PromptFormatter(model_name, self.tokenizer)
        logger.info(f"Prompt formatter initialized: {self.formatter.get_info()}")

        try:
            self.model = AutoModelForCausalLM.from_pretrained(
                model_name,
                quantization_config=quantization_config,
                device_map=DEVICE_MAP_AUTO if device == DEVICE_CUDA else None,
                torch_dtype=torch.bfloat16 if device == DEVICE_CUDA else torch.float32
            )
            logger.info("Model loaded successfully")

            if device == DEVICE_CUDA:
                self._log_cuda_memory("after model load")

        except torch.cuda.OutOfMemoryError:
            logger.error("CUDA Out of Memory during model loading")
            logger.error("Try: 1) Close other GPU applications, 2) Reduce model size, 3) Use CPU")
            raise
        except Exception as e:
            logger.error(f"Failed to load model: {e}")
            raise

        self.model.eval()
        logger.info("HuggingFace client initialized successfully")

    def _log_cuda_memory(self, stage: str) -> None:
        """
        Log CUDA memory usage

        Args:
            stage: Description of when this is called (e.g., "after model load")
        """
        if self.device == DEVICE_CUDA and torch.cuda.is_available():
            allocated = torch.cuda.memory_allocated() / 1e9
            reserved = torch.cuda.memory_reserved() / 1e9
            max_allocated = torch.cuda.max_memory_allocated() / 1e9
            logger.info(
                f"GPU memory {stage}: "
                f"{allocated:.2f}GB allocated, "
                f"{reserved:.2f}GB reserved, "
                f"{max_allocated:.2f}GB peak"
            )

    def is_loaded(self) -> bool:
        """
        Check if model is loaded and ready

        Returns:
            bool: True if model and tokenizer are loaded
        """
        return getattr(self, 'model', None) is not None and getattr(self, 'tokenizer', None) is not None

    def generate(
        self,
        messages: List[Dict[str, str]],
        max_tokens: int = 512,
        temperature: float = 0.3,
        diagnostics: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Generate a completion for a chat

        Args:
            messages: Chat messages ({"role", "content"} dicts)
            max_tokens: Maximum tokens to generate
            temperature: Sampling temperature (0.0 = deterministic)
            diagnostics: Optional dict filled with token counts and latency

        Returns:
            str: Generated text

        Raises:
            RuntimeError: If model not loaded
            GenerativeServiceError: If the GPU runs out of memory
        """
        if not self.is_loaded():
            raise RuntimeError("Model not loaded")

        start_time = time.time()
        prompt = self.formatter.format_messages(messages)

        inputs = self.tokenizer(prompt, return_tensors="pt")
        if self.device == DEVICE_CUDA:
            inputs = inputs.to(DEVICE_CUDA)

        prompt_tokens = inputs.input_ids.shape[1]

        with self._generate_lock:
            try:
                with torch.no_grad():
                    outputs = self.model.generate(
                        inputs.input_ids,
                        attention_mask=inputs.attention_mask,
                        max_new_tokens=max_tokens,
                        temperature=temperature if temperature > 0 else None,
                        do_sample=temperature > 0,
                        pad_token_id=self.tokenizer.pad_token_id
                    )
            except torch.cuda.OutOfMemoryError as e:
                logger.error("CUDA OOM during generation")
                logger.error(f"Prompt tokens: {prompt_tokens}, Max new: {max_tokens}")
                torch.cuda.empty_cache()
                raise GenerativeServiceError(
                    "Model ran out of GPU memory", status=STATUS_RESOURCE_EXHAUSTED
                ) from e

        if self.device == DEVICE_CUDA:
            self._log_cuda_memory("after generation")

        generated_ids = outputs[0][prompt_tokens:]
        generated_text = self.tokenizer.decode(generated_ids, skip_special_tokens=True)

        if diagnostics is not None:
            completion_tokens = len([
                t for t in generated_ids
                if t != self.tokenizer.pad_token_id
            ])
            diagnostics.update({
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": prompt_tokens + completion_tokens,
                "latency_ms": (time.time() - start_time) * 1000,
            })

        return generated_text

    def generate_json(
        self,
        messages: List[Dict[str, str]],
        max_tokens: int = 512,
        temperature: float = 0.0,
        diagnostics: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Generate a JSON object completion with repair

        Uses temperature=0.0 by default (deterministic). Output is cleaned
        with repair_json before parsing.

        Args:
            messages: Chat messages (the system message should request JSON)
            max_tokens: Maximum tokens to generate
            temperature: Sampling temperature
            diagnostics: Optional dict filled with token counts and latency

        Returns:
            dict: Parsed JSON object

        Raises:
            GenerativeServiceError: If output is not a JSON object
        """
        text = self.generate(
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
            diagnostics=diagnostics
        )

        try:
            return parse_json_object(text)
        except ValueError as e:
            logger.warning(f"Unparseable model output ({len(text)} chars): {text[:200]!r}")
            raise GenerativeServiceError(f"Generative service returned malformed JSON: {e}") from e

    def get_model_info(self) -> Dict[str, Any]:
        """
        Get information about loaded model

        Returns:
            dict: Model metadata
        """
        info = {
            "model_name": self.model_name,
            "device": self.device,
            "is_loaded": self.is_loaded(),
            "formatter": self.formatter.get_info(),
        }

        if self.device == DEVICE_CUDA and torch.cuda.is_available():
            info["gpu_memory_allocated_gb"] = torch.cuda.memory_allocated() / 1e9
            info["gpu_memory_reserved_gb"] = torch.cuda.memory_reserved() / 1e9
            info["gpu_memory_max_allocated_gb"] = torch.cuda.max_memory_allocated() / 1e9

        return info
