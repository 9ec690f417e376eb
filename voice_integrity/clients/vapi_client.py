"""
VAPI clients for live call audio and call control.

This module provides a frame source that streams call audio from the VAPI
monitor listen WebSocket, and a small HTTP client for the monitor control
URL used to speak warnings into the call.
"""

import asyncio
import base64
import binascii
import json
import logging
from typing import Optional, Union

import httpx
import numpy as np
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from voice_integrity.clients.audio_source import AudioCaptureError, AudioFrameSource
from voice_integrity.utils.audio_utils import (
    AudioProcessingError,
    FrameAssembler,
    pcm16_to_float32,
)

logger = logging.getLogger(__name__)


class VAPIConnectionError(AudioCaptureError):
    """Raised when VAPI WebSocket connection fails."""
    pass


class VAPIControlError(Exception):
    """Raised when a VAPI control request fails."""
    pass


class VAPIListenSource(AudioFrameSource):
    """
    Frame source reading live call audio from a VAPI listen WebSocket.

    Binary messages are treated as raw 16-bit PCM; text messages are parsed
    as JSON carrying base64 ``audio``. Payloads of any size are re-chunked
    into frames of exactly ``frame_size`` samples.
    """

    def __init__(
        self,
        listen_url: str,
        frame_size: int = 4096,
        sample_rate: int = 16000,
        channels: int = 1,
        channel_index: int = 0,
        connection_timeout: float = 10.0
    ):
        """
        Initialize VAPI listen source.

        Args:
            listen_url: WebSocket URL to connect to
            frame_size: Samples per emitted frame (default: 4096)
            sample_rate: Audio sample rate in Hz (default: 16000)
            channels: Interleaved channels in the stream (default: 1)
            channel_index: Channel carrying the candidate's voice (default: 0)
            connection_timeout: WebSocket connection timeout (default: 10.0 seconds)
        """
        super().__init__(frame_size=frame_size, sample_rate=sample_rate)
        self.listen_url = listen_url
        self.channels = channels
        self.channel_index = channel_index
        self.connection_timeout = connection_timeout

        self.websocket = None
        self.is_connected = False
        self._assembler = FrameAssembler(frame_size)

        logger.info(f"Initialized VAPI listen source for URL: {listen_url}")

    async def _open(self) -> None:
        """
        Establish WebSocket connection to VAPI and start streaming.

        Raises:
            VAPIConnectionError: If connection fails
        """
        try:
            logger.info(f"Connecting to VAPI listen WebSocket: {self.listen_url}")

            self.websocket = await asyncio.wait_for(
                websockets.connect(
                    self.listen_url,
                    ping_interval=20,
                    ping_timeout=10,
                    close_timeout=10
                ),
                timeout=self.connection_timeout
            )

            self.is_connected = True
            logger.info("Successfully connected to VAPI listen WebSocket")

        except asyncio.TimeoutError:
            logger.error(f"Timeout connecting to VAPI WebSocket: {self.listen_url}")
            raise VAPIConnectionError(f"Connection timeout after {self.connection_timeout}s")
        except WebSocketException as e:
            logger.error(f"WebSocket error connecting to VAPI: {e}")
            raise VAPIConnectionError(f"WebSocket connection failed: {e}")
        except OSError as e:
            logger.error(f"Network error connecting to VAPI: {e}")
            raise VAPIConnectionError(f"Connection failed: {e}")

        self._pump_task = asyncio.create_task(self._pump())

    async def _close(self) -> None:
        """Close WebSocket connection gracefully."""
        if self.websocket is not None:
            try:
                logger.info("Closing VAPI listen WebSocket connection")
                await self.websocket.close()
            finally:
                self.is_connected = False
                self.websocket = None
        self._assembler.reset()

    def decode_message(self, message: Union[str, bytes]) -> Optional[np.ndarray]:
        """
        Decode one WebSocket message into float32 samples.

        Args:
            message: Raw binary PCM or a JSON text message

        Returns:
            Samples for the configured channel, or None for non-audio messages
        """
        try:
            if isinstance(message, (bytes, bytearray)):
                pcm = bytes(message)
            else:
                data = json.loads(message)
                if not isinstance(data, dict) or 'audio' not in data:
                    logger.debug("Received message without audio data")
                    return None
                pcm = base64.b64decode(data['audio'])

            if not pcm:
                logger.debug("Received empty audio chunk")
                return None

            return pcm16_to_float32(pcm, channels=self.channels, channel_index=self.channel_index)

        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse WebSocket message as JSON: {e}")
            return None
        except (binascii.Error, AudioProcessingError) as e:
            logger.warning(f"Failed to decode audio payload: {e}")
            return None

    async def _pump(self) -> None:
        """Read the WebSocket until it closes, delivering complete frames."""
        try:
            async for message in self.websocket:
                received_at = self.clock()
                samples = self.decode_message(message)
                if samples is None:
                    continue
                for frame in self._assembler.feed(samples):
                    await self._deliver(self.stamp(frame, received_at))
        except ConnectionClosed as e:
            logger.warning(f"VAPI listen stream closed: {e}")
        except WebSocketException as e:
            logger.error(f"WebSocket error while streaming: {e}")
        finally:
            self.is_connected = False
            logger.info(f"VAPI listen stream ended after {self.frames_delivered} frames")


class VAPIControlClient:
    """HTTP client for a call's VAPI monitor control URL."""

    def __init__(self, control_url: str, timeout: float = 10.0):
        self.control_url = control_url
        self.timeout = timeout

    async def say(self, content: str, end_call_after_spoken: bool = False) -> None:
        """
        Ask the assistant to speak a message into the live call.

        Args:
            content: Text to speak
            end_call_after_spoken: Whether VAPI should hang up afterwards

        Raises:
            VAPIControlError: If the control request fails
        """
        payload = {
            "type": "say",
            "content": content,
            "endCallAfterSpoken": end_call_after_spoken,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.control_url, json=payload)
                response.raise_for_status()
            logger.info("Sent say request to VAPI control URL")

        except httpx.TimeoutException as e:
            logger.error(f"Timeout sending control request to {self.control_url}: {e}")
            raise VAPIControlError(f"Timeout sending control request: {e}")
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error from VAPI control URL: {e}")
            raise VAPIControlError(f"Control request rejected: {e.response.status_code}")
        except httpx.HTTPError as e:
            logger.error(f"Failed to reach VAPI control URL: {e}")
            raise VAPIControlError(f"Control request failed: {e}")
