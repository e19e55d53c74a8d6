# vision_extractor.py
from __future__ import annotations

import asyncio
import base64
import json
import logging
import os
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import numpy as np
import aiohttp     # async HTTP client (preferred)
import requests    # sync path for callers without an event loop
import cv2


# -----------------------
# Exception hierarchy
# -----------------------
class VisionExtractorError(Exception): pass
class OllamaConnectionError(VisionExtractorError): pass
class JSONParseError(VisionExtractorError): pass
class InvalidInputError(VisionExtractorError): pass


# -----------------------
# Config
# -----------------------
@dataclass
class ExtractorConfig:
    ollama_endpoint: str = field(default_factory=lambda: os.environ.get("OLLAMA_ENDPOINT", "http://localhost:11434/api/generate"))
    tags_endpoint: str = field(default_factory=lambda: os.environ.get("OLLAMA_TAGS_ENDPOINT", "http://localhost:11434/api/tags"))
    model_name: str = field(default_factory=lambda: os.environ.get("OLLAMA_VISION_MODEL", "qwen2.5vl:3b"))
    connect_timeout: float = 20.0
    read_timeout: float = 180.0
    # one attempt: a failed call degrades to the geometric result instead of retrying
    max_retries: int = 1
    retry_delay: float = 1.0
    max_concurrent_requests: int = 1
    max_image_side: int = 1600  # crops larger than this are downscaled before upload
    temperature: float = 0.0

    # logging
    enable_logging: bool = True
    log_level: int = logging.INFO


# -----------------------
# Prompt
# -----------------------
TITLEBLOCK_PROMPT = """You are an expert at reading architectural/engineering drawing title blocks.
Extract the sheet number and sheet title from the title block image.
Return ONLY a valid JSON object BETWEEN THE MARKERS BEGIN_JSON and END_JSON, in this exact format:
{"sheet_number": "...", "sheet_title": "..."}

Rules:
- Sheet numbers follow AEC patterns like: A101, A1.01, M-201, E001, FP101, S1-101
- Sheet titles are descriptive names like: "FIRST FLOOR PLAN", "MECHANICAL SCHEDULE", "ELECTRICAL DETAILS"
- IGNORE jurisdiction stamps like "NOT FOR CONSTRUCTION", "ISSUED FOR PERMIT", etc.
- IGNORE general notes like "dimensions must be checked", "verify on site", etc.
- The sheet title should describe the CONTENT of the drawing (plan, detail, schedule, etc.)
- If you cannot find a value, use null
- Do NOT include any other text or explanation

BEGIN_JSON
{"sheet_number":null,"sheet_title":null}
END_JSON
"""

TEMPLATE_PROMPT = """You are an expert at analyzing architectural/engineering drawing title blocks.
This is a full {discipline} drawing sheet. Locate the VALUE regions (not the labels) for:
1. "SHEET TITLE" or "TITLE" - where the sheet name is written (e.g. "FIRST FLOOR PLAN")
2. "SHEET NO", "SHEET NUMBER", "SH NO", "SHEET #" - where the sheet number is written (e.g. "A101")

Return bounding boxes as normalized coordinates (0-1 of the image width/height, origin top-left).
Rules:
- Return the VALUE boxes, NOT the label boxes
- Ignore stamps, jurisdiction notes and boilerplate areas
- Focus on the title block, usually bottom-right of the drawing
- Use null for a field you cannot locate
- Set confidence 0.0-1.0 by how clearly the fields are visible
Return ONLY a valid JSON object BETWEEN THE MARKERS BEGIN_JSON and END_JSON, in this exact format:

BEGIN_JSON
{{"bbox_sheet_title_value": {{"x": 0.75, "y": 0.85, "w": 0.20, "h": 0.04}}, "bbox_sheet_number_value": {{"x": 0.92, "y": 0.93, "w": 0.06, "h": 0.03}}, "confidence": 0.85}}
END_JSON
"""
TEMPLATE_KEYS = ("bbox_sheet_title_value", "bbox_sheet_number_value", "confidence")


@dataclass
class VisionResult:
    sheet_number: Optional[str] = None
    sheet_title: Optional[str] = None
    raw: Any = None
    error: Optional[str] = None
    elapsed_ms: float = 0.0

    @property
    def found_anything(self) -> bool:
        return bool(self.sheet_number or self.sheet_title)


# -----------------------
# Logging helper
# -----------------------
def _setup_logger(cfg: ExtractorConfig) -> logging.Logger:
    logger = logging.getLogger("VisionExtractor")
    if not logger.handlers:
        h = logging.StreamHandler()
        fmt = "[VisionExtractor] %(asctime)s %(levelname)s - %(message)s"
        h.setFormatter(logging.Formatter(fmt))
        logger.addHandler(h)
    logger.setLevel(cfg.log_level if cfg.enable_logging else logging.CRITICAL)
    return logger


# -----------------------
# Utilities: image encoding
# -----------------------
def _rgb_numpy_to_png_b64(arr: np.ndarray, max_side: Optional[int] = None) -> str:
    """
    Convert H,W,3 RGB numpy array to PNG base64 string.
    Resize so longer side <= max_side if provided (lossless text matters more than size).
    """
    if arr is None or getattr(arr, "size", 0) == 0:
        raise InvalidInputError("No image array provided")
    img = arr
    if img.dtype != np.uint8:
        img = np.clip(img, 0, 255).astype(np.uint8)
    if img.ndim == 2:
        bgr = cv2.cvtColor(img, cv2.COLOR_GRAY2BGR)
    else:
        bgr = cv2.cvtColor(img, cv2.COLOR_RGB2BGR)
    if max_side:
        h, w = bgr.shape[:2]
        longer = max(h, w)
        if longer > max_side:
            scale = max_side / float(longer)
            bgr = cv2.resize(bgr, (int(round(w * scale)), int(round(h * scale))), interpolation=cv2.INTER_AREA)
    ok, enc = cv2.imencode(".png", bgr)
    if not ok:
        raise InvalidInputError("Failed to encode image to PNG")
    return base64.b64encode(enc.tobytes()).decode("ascii")


def _extract_json_from_model_response(resp: Any, keys: Tuple[str, ...] = ("sheet_number", "sheet_title")) -> Dict[str, Any]:
    """
    Pull the JSON object out of a model response.

    Handles an already-decoded dict (with or without a 'response' text field),
    BEGIN_JSON/END_JSON markers, ```json fences and, last, the first {...}
    span in free text. Trailing commas are repaired.
    """
    if resp is None:
        raise JSONParseError("Empty model response")

    if isinstance(resp, dict):
        if any(k in resp for k in keys):
            return resp
        for key in ("response", "text", "content"):
            if isinstance(resp.get(key), str):
                return _extract_json_from_model_response(resp[key], keys)
        raise JSONParseError("Response dict carries no text field")

    if not isinstance(resp, str):
        raise JSONParseError(f"Unsupported response type: {type(resp).__name__}")

    s = re.sub(r"```(?:json)?\s*(.*?)```", r"\1", resp, flags=re.DOTALL | re.IGNORECASE).strip()

    candidates = []
    m = re.search(r"BEGIN_JSON\s*(\{.*?\})\s*(?:END_JSON|$)", s, flags=re.DOTALL | re.IGNORECASE)
    if m:
        candidates.append(m.group(1))
    m2 = re.search(r"\{.*\}", s, flags=re.DOTALL)
    if m2:
        candidates.append(m2.group(0))

    for cand in candidates:
        for attempt in (cand, re.sub(r",\s*(\}|])", r"\1", cand)):
            try:
                parsed = json.loads(attempt)
            except ValueError:
                continue
            if isinstance(parsed, dict):
                return parsed
    raise JSONParseError(f"No JSON object found in model output: {s[:200]!r}")


def _clean_field(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    if not s or s.lower() in ("null", "none", "n/a"):
        return None
    return s


# -----------------------
# Ollama client
# -----------------------
class OllamaClient:
    def __init__(self, cfg: ExtractorConfig, logger: logging.Logger):
        """
        Store settings only. The aiohttp session is created lazily inside a
        running loop (see _ensure_session).
        """
        self.cfg = cfg
        self.logger = logger
        self._aio_timeout = aiohttp.ClientTimeout(
            total=None,
            sock_connect=cfg.connect_timeout,
            sock_read=cfg.read_timeout,
        )
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._aio_session: Optional[aiohttp.ClientSession] = None
        self._sync_session: Optional[requests.Session] = None

    async def _ensure_session(self):
        if self._aio_session is not None and not self._aio_session.closed:
            return
        self.logger.debug("Creating aiohttp ClientSession inside running loop")
        self._semaphore = asyncio.Semaphore(max(1, self.cfg.max_concurrent_requests))
        self._aio_session = aiohttp.ClientSession(timeout=self._aio_timeout)

    async def close(self):
        if self._aio_session is not None and not self._aio_session.closed:
            await self._aio_session.close()
        self._aio_session = None
        if self._sync_session is not None:
            self._sync_session.close()
            self._sync_session = None

    def _body(self, prompt: str, image_b64: Optional[str]) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": self.cfg.model_name,
            "prompt": prompt,
            "stream": False,
            "stop": ["END_JSON"],
            "options": {"temperature": self.cfg.temperature},
        }
        if image_b64:
            body["images"] = [image_b64]
        return body

    async def generate(self, prompt: str, image_b64: Optional[str] = None) -> Dict[str, Any]:
        """Async generate; returns the decoded Ollama response dict."""
        await self._ensure_session()
        start_total = time.perf_counter()
        attempt = 0
        last_exc: Optional[BaseException] = None
        while attempt < max(1, self.cfg.max_retries):
            attempt += 1
            try:
                async with self._semaphore:
                    self.logger.debug("Ollama request (attempt %d) model=%s", attempt, self.cfg.model_name)
                    async with self._aio_session.post(self.cfg.ollama_endpoint, json=self._body(prompt, image_b64)) as resp:
                        if resp.status != 200:
                            txt = await resp.text()
                            raise OllamaConnectionError(f"Ollama HTTP {resp.status}: {txt[:500]}")
                        return await resp.json(content_type=None)
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, OllamaConnectionError) as e:
                last_exc = e
                self.logger.warning("Ollama attempt %d failed: %r", attempt, e)
                if attempt < self.cfg.max_retries:
                    await asyncio.sleep(self.cfg.retry_delay * (2 ** (attempt - 1)))

        elapsed = time.perf_counter() - start_total
        raise OllamaConnectionError(f"Ollama generate failed after {attempt} attempt(s) in {elapsed:.2f}s: {last_exc!r}")

    def generate_sync(self, prompt: str, image_b64: Optional[str] = None) -> Dict[str, Any]:
        if self._sync_session is None:
            self._sync_session = requests.Session()
        attempt = 0
        last_exc: Optional[BaseException] = None
        while attempt < max(1, self.cfg.max_retries):
            attempt += 1
            try:
                resp = self._sync_session.post(
                    self.cfg.ollama_endpoint,
                    json=self._body(prompt, image_b64),
                    timeout=(self.cfg.connect_timeout, self.cfg.read_timeout),
                )
                if resp.status_code != 200:
                    raise OllamaConnectionError(f"Ollama HTTP {resp.status_code}: {resp.text[:500]}")
                return resp.json()
            except (requests.RequestException, ValueError, OllamaConnectionError) as e:
                last_exc = e
                self.logger.warning("Ollama sync attempt %d failed: %r", attempt, e)
                if attempt < self.cfg.max_retries:
                    time.sleep(self.cfg.retry_delay * (2 ** (attempt - 1)))
        raise OllamaConnectionError(f"Ollama generate_sync failed after {attempt} attempt(s): {last_exc!r}")


# -----------------------
# Title-block vision extractor
# -----------------------
class VisionExtractor:
    """
    Reads sheet number/title off a title-block crop with a local vision model.

    `extract_titleblock` is best-effort: network and parse failures are logged
    and returned as an empty VisionResult with `error` set.
    """

    def __init__(self, cfg: Optional[ExtractorConfig] = None, client: Optional[OllamaClient] = None):
        self.cfg = cfg or ExtractorConfig()
        self.logger = _setup_logger(self.cfg)
        self.client = client or OllamaClient(self.cfg, self.logger)

    async def close(self):
        await self.client.close()

    async def health_check(self) -> bool:
        """Check that Ollama is reachable and the model is pulled."""
        try:
            timeout = aiohttp.ClientTimeout(total=10)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(self.cfg.tags_endpoint) as resp:
                    if resp.status != 200:
                        self.logger.error("Ollama health check failed: HTTP %s", resp.status)
                        return False
                    data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.error("Ollama health check failed: %s", e)
            return False

        models = [m.get("name") for m in data.get("models", [])]
        if self.cfg.model_name not in models:
            self.logger.error("Model %s not found in Ollama. Available models: %s", self.cfg.model_name, models)
            return False
        self.logger.info("Ollama health check passed. Model %s is available.", self.cfg.model_name)
        return True

    def _to_result(self, response: Dict[str, Any], start: float) -> VisionResult:
        elapsed_ms = (time.perf_counter() - start) * 1000.0
        try:
            parsed = _extract_json_from_model_response(response)
        except JSONParseError as e:
            self.logger.warning("Vision response not parseable: %s", e)
            return VisionResult(raw=response, error=f"parse_error: {e}", elapsed_ms=elapsed_ms)
        return VisionResult(
            sheet_number=_clean_field(parsed.get("sheet_number")),
            sheet_title=_clean_field(parsed.get("sheet_title")),
            raw=parsed,
            elapsed_ms=elapsed_ms,
        )

    async def extract_titleblock(self, image: np.ndarray, meta: Optional[Dict[str, Any]] = None) -> VisionResult:
        start = time.perf_counter()
        meta = meta or {}
        try:
            image_b64 = _rgb_numpy_to_png_b64(image, max_side=self.cfg.max_image_side)
        except InvalidInputError as e:
            self.logger.warning("Vision input rejected (%s): %s", meta.get("phase"), e)
            return VisionResult(error=f"invalid_input: {e}")

        try:
            response = await self.client.generate(TITLEBLOCK_PROMPT, image_b64)
        except VisionExtractorError as e:
            self.logger.warning(
                "Vision call failed job=%s source_index=%s phase=%s: %s",
                meta.get("job_id"), meta.get("source_index"), meta.get("phase"), e,
            )
            return VisionResult(error=f"call_failed: {e}", elapsed_ms=(time.perf_counter() - start) * 1000.0)

        result = self._to_result(response, start)
        self.logger.info(
            "Vision %s source_index=%s -> number=%r title=%r (%.0f ms)",
            meta.get("phase", "titleblock"), meta.get("source_index"),
            result.sheet_number, result.sheet_title, result.elapsed_ms,
        )
        return result

    async def detect_titleblock_template(
        self,
        image: np.ndarray,
        discipline: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Ask the model where the title and number values sit on a full sheet.

        Returns the parsed JSON ({bbox_sheet_title_value, bbox_sheet_number_value,
        confidence}) or an empty dict when the call or the parse fails.
        """
        meta = meta or {}
        try:
            image_b64 = _rgb_numpy_to_png_b64(image, max_side=self.cfg.max_image_side)
            response = await self.client.generate(TEMPLATE_PROMPT.format(discipline=discipline), image_b64)
            parsed = _extract_json_from_model_response(response, TEMPLATE_KEYS)
        except VisionExtractorError as e:
            self.logger.warning(
                "Template detection failed job=%s discipline=%s: %s", meta.get("job_id"), discipline, e,
            )
            return {}
        self.logger.info("Template detection %s -> confidence=%r", discipline, parsed.get("confidence"))
        return parsed

    def extract_titleblock_sync(self, image: np.ndarray, meta: Optional[Dict[str, Any]] = None) -> VisionResult:
        start = time.perf_counter()
        try:
            image_b64 = _rgb_numpy_to_png_b64(image, max_side=self.cfg.max_image_side)
            response = self.client.generate_sync(TITLEBLOCK_PROMPT, image_b64)
        except VisionExtractorError as e:
            self.logger.warning("Vision call failed (sync): %s", e)
            return VisionResult(error=f"call_failed: {e}")
        return self._to_result(response, start)


# -----------------------
# CLI smoke test
# -----------------------
if __name__ == "__main__":
    import argparse
    from PIL import Image

    parser = argparse.ArgumentParser(description="Read sheet number/title from a title-block image")
    parser.add_argument("image", help="PNG/JPEG of a title block")
    parser.add_argument("--model", default=None)
    parser.add_argument("--endpoint", default=None)
    args = parser.parse_args()

    cfg = ExtractorConfig()
    if args.model:
        cfg.model_name = args.model
    if args.endpoint:
        cfg.ollama_endpoint = args.endpoint
    arr = np.asarray(Image.open(args.image).convert("RGB"))
    res = VisionExtractor(cfg).extract_titleblock_sync(arr, {"phase": "cli"})
    print(json.dumps({"sheet_number": res.sheet_number, "sheet_title": res.sheet_title, "error": res.error}, indent=2))
