"""VNC backend used to check that a freshly installed server answers."""

import io
import logging
import tempfile
from pathlib import Path

from PIL import Image
from vncdotool import api as vnc_api

from ..types import ProbeResult


logger = logging.getLogger(__name__)


def _capture_frame(client: vnc_api.VNCDoToolClient) -> bytes:
    # vncdotool only captures to a file
    with tempfile.TemporaryDirectory(prefix="vnc-setup-") as tmp:
        frame = Path(tmp) / "frame.png"
        client.captureScreen(str(frame))
        return frame.read_bytes()


class VNCProbe:
    """Grabs one frame from a VNC server.

    A successful probe proves the server accepts the password and that the
    desktop session renders something.
    """

    def probe(
        self,
        server: str,
        password: str | None = None,
        save_to: Path | None = None,
    ) -> ProbeResult:
        """Connect, capture one frame and disconnect.

        Args:
            server: VNC server address (e.g., "localhost::5901")
            password: VNC password
            save_to: Optional path to keep the captured PNG

        Returns:
            ProbeResult; failures are reported in it, not raised
        """
        logger.info(f"Probing VNC server: {server}")
        client = None
        try:
            client = vnc_api.connect(server, password=password)
            png = _capture_frame(client)
            width, height = Image.open(io.BytesIO(png)).size
            if save_to is not None:
                save_to.write_bytes(png)
                logger.info(f"Saved frame: {save_to}")
            return ProbeResult(server=server, success=True, width=width, height=height)
        except Exception as e:
            logger.error(f"VNC probe of {server} failed: {e}")
            return ProbeResult(server=server, success=False, error=str(e))
        finally:
            if client is not None:
                try:
                    client.disconnect()
                except Exception as e:
                    logger.debug(f"Disconnect after probe failed: {e}")
