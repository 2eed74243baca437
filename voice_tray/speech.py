#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Speech engines

Every engine exposes ``speak(text, voice, rate)``: it blocks until the
utterance is finished and raises PlaybackError when it cannot be spoken.
The playback worker never looks further than that.
"""

import logging
import shutil
import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import List, Dict

from .errors import PlaybackError, ConfigError

logger = logging.getLogger(__name__)


def _preview(text: str) -> str:
    return f"{text[:50]}{'...' if len(text) > 50 else ''}"


class SubprocessEngine:
    """Runs one external command per utterance and waits for it."""

    name = "subprocess"
    binary = ""

    def command(self, text: str, voice: str, rate: int) -> List[str]:
        raise NotImplementedError

    def run_kwargs(self) -> Dict:
        return {}

    def speak(self, text: str, voice: str, rate: int) -> None:
        cmd = self.command(text, voice, rate)
        t0 = time.time()
        try:
            proc = subprocess.run(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                check=False,
                **self.run_kwargs(),
            )
        except OSError as e:
            raise PlaybackError(f"{self.name}: cannot run {cmd[0]}: {e}") from e

        if proc.returncode != 0:
            err = (proc.stderr or b"").decode("utf-8", "ignore").strip()
            raise PlaybackError(f"{self.name} exited with {proc.returncode}: {err[:200]}")

        logger.info(f"[TTS] Spoke in {int((time.time() - t0) * 1000)}ms: {_preview(text)}")


class SayEngine(SubprocessEngine):
    """macOS ``say``"""

    name = "say"
    binary = "say"

    def command(self, text, voice, rate):
        return [self.binary, "-v", voice, "-r", str(rate), text]


class EspeakEngine(SubprocessEngine):
    """Linux ``espeak``. Voice names are macOS ones, so only the rate is passed."""

    name = "espeak"
    binary = "espeak"

    def command(self, text, voice, rate):
        return [self.binary, "-s", str(rate), text]


# female / male fallbacks for the stock SAPI voices
_SAPI_FEMALE = {"samantha", "karen", "victoria", "fiona", "moira"}
SAPI_ZIRA = "Microsoft Zira Desktop"
SAPI_DAVID = "Microsoft David Desktop"


def map_voice_windows(voice: str) -> str:
    return SAPI_ZIRA if (voice or "").lower() in _SAPI_FEMALE else SAPI_DAVID


def wpm_to_sapi_rate(wpm: int) -> int:
    """220 wpm is SAPI rate 0; every 15 wpm is one step, clamped to -10..10."""
    delta = int(wpm) - 220
    # truncate toward zero
    step = int(delta / 15)
    return max(-10, min(10, step))


class SapiEngine(SubprocessEngine):
    """Windows System.Speech through PowerShell."""

    name = "sapi"
    binary = "powershell"

    def command(self, text, voice, rate):
        # single quotes would end the PowerShell string literal
        safe_text = text.replace("'", " ")
        script = (
            "Add-Type -AssemblyName System.Speech; "
            "$s = New-Object System.Speech.Synthesis.SpeechSynthesizer; "
            f"$s.SelectVoice('{map_voice_windows(voice)}'); "
            f"$s.Rate = {wpm_to_sapi_rate(rate)}; "
            f"$s.Speak('{safe_text}')"
        )
        return [self.binary, "-NoProfile", "-NonInteractive", "-Command", script]

    def run_kwargs(self):
        if sys.platform == "win32":
            return {"creationflags": getattr(subprocess, "CREATE_NO_WINDOW", 0x08000000)}
        return {}


class PiperEngine:
    """
    Local neural voice via Piper.

    ``voice`` is either a path to an ``.onnx`` model or the model's name
    inside ``voices_dir``. Loaded voices are kept for reuse.
    """

    name = "piper"

    def __init__(self, voices_dir: str = "models/piper/voices", base_rate: int = 220):
        try:
            import numpy as np
            import sounddevice as sd
            from piper import PiperVoice, SynthesisConfig
        except ImportError as e:
            raise ConfigError(f"piper engine needs the 'piper' extra: {e}") from e

        self._np = np
        self._sd = sd
        self._PiperVoice = PiperVoice
        self._SynthesisConfig = SynthesisConfig
        self.voices_dir = Path(voices_dir)
        self.base_rate = base_rate
        self._voices = {}
        self._lock = threading.Lock()

    def _model_path(self, voice: str) -> Path:
        candidate = Path(voice)
        if candidate.suffix == ".onnx":
            return candidate
        return self.voices_dir / f"{voice}.onnx"

    def _load(self, voice: str):
        with self._lock:
            if voice not in self._voices:
                path = self._model_path(voice)
                if not path.exists():
                    raise PlaybackError(f"Piper model not found: {path}")
                self._voices[voice] = self._PiperVoice.load(str(path))
                logger.info(f"[TTS] Piper voice loaded: {path}")
            return self._voices[voice]

    def speak(self, text: str, voice: str, rate: int) -> None:
        piper_voice = self._load(voice)
        # slower speech = longer phonemes
        syn_config = self._SynthesisConfig(length_scale=self.base_rate / max(1, rate))
        try:
            audio = [chunk.audio_int16_array for chunk in piper_voice.synthesize(text, syn_config=syn_config)]
            if not audio:
                raise PlaybackError("Piper produced no audio")
            full_audio = self._np.concatenate(audio).astype(self._np.float32) / 32768.0
            self._sd.play(full_audio, piper_voice.config.sample_rate)
            self._sd.wait()
        except PlaybackError:
            raise
        except Exception as e:
            raise PlaybackError(f"Piper synthesis failed: {e}") from e
        logger.info(f"[TTS] Spoke: {_preview(text)}")


class LogEngine:
    """Headless engine: logs the utterance instead of playing it."""

    name = "log"

    def speak(self, text: str, voice: str, rate: int) -> None:
        logger.info(f"[TTS] Would speak ({voice}, {rate} wpm): {text}")


ENGINES = {
    "say": SayEngine,
    "espeak": EspeakEngine,
    "sapi": SapiEngine,
    "log": LogEngine,
}


def default_engine_name(platform: str = None) -> str:
    platform = platform or sys.platform
    if platform == "darwin":
        return "say"
    if platform == "win32":
        return "sapi"
    return "espeak"


def create_engine(name: str = "auto", piper_voices_dir: str = "models/piper/voices", base_rate: int = 220):
    """
    Build the engine named by TTS_ENGINE.

    Raises:
        ConfigError: unknown engine name or missing optional dependency
    """
    name = (name or "auto").strip().lower()
    if name == "auto":
        name = default_engine_name()

    if name == "piper":
        engine = PiperEngine(piper_voices_dir, base_rate)
    elif name in ENGINES:
        engine = ENGINES[name]()
    else:
        raise ConfigError(f"unknown TTS engine '{name}' (choose from auto, piper, {', '.join(ENGINES)})")

    binary = getattr(engine, "binary", "")
    if binary and shutil.which(binary) is None:
        logger.warning(f"[TTS] '{binary}' not found on PATH - utterances will fail")
    logger.info(f"[TTS] Engine: {engine.name}")
    return engine
