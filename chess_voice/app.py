"""
chess-voice console entry point.

Joins the voice topic of one chess game and drives the call controller from
single-letter stdin commands. The game client normally embeds
VoiceChatBridge directly; this front-end exists for headless use and
for trying calls between two terminals.
"""

import argparse
import signal
import sys
import threading
from pathlib import Path
from typing import Optional

import RNS
from PySide6.QtCore import QCoreApplication, QObject, QTimer, Signal, Slot

from chess_voice.config import Config
from chess_voice.core.call_state import SessionIdentity
from chess_voice.core.channel import SignalingChannel
from chess_voice.core.controller import CallController, VoiceCallStatus
from chess_voice.core.media import SoundDeviceMedia, list_devices
from chess_voice.core.peer import create_peer_connection
from chess_voice.core.reticulum_client import ReticulumTransport
from chess_voice.core.session import PeerSession
from chess_voice.core.transport import LocalBroker
from chess_voice.identity import load_or_create_identity
from chess_voice.logging_config import setup_logging, get_logger, get_default_log_file
from chess_voice.ui.voice_bridge import EventLoopThread, VoiceChatBridge

logger = get_logger("app")

HELP = "Commands: s=start  e=end  m=mute  d=deafen  r=retry  q=quit"


class ConsoleFrontend(QObject):
    """Prints call status and maps stdin commands onto the bridge slots."""

    command_received = Signal(str)

    def __init__(self, bridge: VoiceChatBridge, app: QCoreApplication):
        super().__init__()
        self.bridge = bridge
        self.app = app
        self._last_key = None

        self.command_received.connect(self.on_command)
        bridge.status_changed.connect(self.on_status)
        bridge.error_changed.connect(self.on_error)
        bridge.retry_available_changed.connect(self.on_retry_available)
        bridge.levels_changed.connect(self.on_levels)

        self._reader = threading.Thread(
            target=self._read_stdin, name="chess-voice-stdin", daemon=True
        )

    def start(self) -> None:
        print(HELP)
        self._reader.start()

    def _read_stdin(self) -> None:
        for line in sys.stdin:
            self.command_received.emit(line)
        self.command_received.emit("q")

    @Slot(str)
    def on_command(self, line: str) -> None:
        command = line.strip().lower()
        if not command:
            return

        if command[0] == "q":
            logger.info("Quit requested")
            self.app.quit()
            return

        actions = {
            "s": self.bridge.start_call,
            "e": self.bridge.end_call,
            "m": self.bridge.toggle_mute,
            "d": self.bridge.toggle_deafen,
            "r": self.bridge.retry_connection,
        }
        action = actions.get(command[0])
        if action is None:
            print(HELP)
            return
        action()

    @Slot(object)
    def on_status(self, status: VoiceCallStatus) -> None:
        key = (status.phase, status.is_muted, status.is_deafened, status.remote_ready)
        if key == self._last_key:
            return
        self._last_key = key

        flags = []
        if status.is_muted:
            flags.append("muted")
        if status.is_deafened:
            flags.append("deafened")
        if status.remote_ready:
            flags.append("opponent ready")
        suffix = f" ({', '.join(flags)})" if flags else ""
        print(f"[voice] {status.phase.name.lower()}{suffix}")

    @Slot(str)
    def on_error(self, message: str) -> None:
        if message:
            print(f"[voice] error: {message}")

    @Slot(bool)
    def on_retry_available(self, available: bool) -> None:
        if available:
            print("[voice] call failed, press r to retry")

    @Slot(float, float)
    def on_levels(self, local: float, remote: float) -> None:
        logger.debug(f"Levels: mic={local:.2f} remote={remote:.2f}")


def _create_transport(kind: str, config: Config, config_dir: Path, rns_config: Optional[str]):
    if kind == "loopback":
        return LocalBroker()

    logger.info("Initializing Reticulum")
    reticulum = RNS.Reticulum(configdir=rns_config)
    try:
        interface_count = len(reticulum.get_interface_stats())
        logger.info(f"Reticulum initialized on {interface_count} interface(s)")
    except Exception as e:
        logger.warning(f"Could not get interface stats (RPC unavailable): {e}")

    identity = load_or_create_identity(identity_path=config_dir / "identity")
    return ReticulumTransport(
        identity,
        app_name=config.app_name,
        fragment_timeout_sec=config.fragment_timeout_sec,
    )


def _build_controller(
    config: Config, identity: SessionIdentity, transport, media
) -> CallController:
    channel = SignalingChannel(
        transport,
        identity.local_id,
        identity.remote_id,
        dupe_window_sec=config.dupe_window_sec,
    )
    session = PeerSession(
        identity,
        channel,
        media,
        create_peer_connection,
        config.stun_servers,
        auto_answer=config.auto_answer,
    )
    return CallController(
        session,
        grace_delay=config.grace_delay,
        meter_interval=config.meter_interval,
    )


async def _close_controller(controller: CallController) -> None:
    await controller.close()
    await controller.session.close()


def run_app(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv

    parser = argparse.ArgumentParser(
        description="chess-voice - voice chat between the two players of a chess game",
        add_help=True,
    )
    parser.add_argument("--game-id", type=str, default=None, help="Chess game id.")
    parser.add_argument("--user-id", type=str, default=None, help="Local participant id.")
    parser.add_argument(
        "--opponent-id", type=str, default=None, help="Remote participant id."
    )
    parser.add_argument(
        "--config-dir",
        type=str,
        default=None,
        help="Path to config directory (default: ~/.chess_voice).",
    )
    parser.add_argument(
        "--rns-config",
        type=str,
        default=None,
        help="Path to Reticulum config directory.",
    )
    parser.add_argument(
        "--transport",
        choices=["reticulum", "loopback"],
        default=None,
        help="Signaling transport (default: from config). 'loopback' runs the "
        "opponent in-process against the same audio devices.",
    )
    parser.add_argument(
        "--input-device", type=int, default=None, help="Audio input device index."
    )
    parser.add_argument(
        "--output-device", type=int, default=None, help="Audio output device index."
    )
    parser.add_argument(
        "--list-devices",
        action="store_true",
        help="List audio devices and exit.",
    )
    parser.add_argument(
        "--no-auto-start",
        action="store_true",
        help="Wait for the 's' command instead of starting the call immediately.",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO).",
    )
    parser.add_argument(
        "--log-file",
        type=str,
        default=None,
        help="Path to log file (default: ~/.chess_voice/logs/chess_voice.log).",
    )
    parser.add_argument(
        "--no-log-file",
        action="store_true",
        help="Disable logging to file.",
    )

    args, qt_args = parser.parse_known_args(argv)

    if args.list_devices:
        for dev in list_devices():
            print(
                f"{dev['index']:3d}  in={dev['inputs']} out={dev['outputs']}  {dev['name']}"
            )
        return 0

    if not (args.game_id and args.user_id and args.opponent_id):
        parser.error("--game-id, --user-id and --opponent-id are required")
    if args.user_id == args.opponent_id:
        parser.error("--user-id and --opponent-id must differ")

    log_file = None
    if not args.no_log_file:
        log_file = Path(args.log_file) if args.log_file else get_default_log_file()

    setup_logging(level=args.log_level, log_file=log_file, console=True)

    logger.info("chess-voice starting")
    logger.debug(f"Command line arguments: {argv}")

    config_dir = (
        Path(args.config_dir) if args.config_dir else Path.home() / ".chess_voice"
    )
    config_dir.mkdir(parents=True, exist_ok=True)
    logger.info(f"Using config directory: {config_dir}")

    config = Config(config_path=config_dir / "config.json")

    if args.input_device is not None:
        config.audio_input_device = args.input_device
        config.save()
        logger.info(f"Saved audio input device {args.input_device} to config")

    if args.output_device is not None:
        config.audio_output_device = args.output_device
        config.save()
        logger.info(f"Saved audio output device {args.output_device} to config")

    transport_kind = args.transport or config.transport
    transport = _create_transport(transport_kind, config, config_dir, args.rns_config)

    identity = SessionIdentity(
        local_id=args.user_id,
        remote_id=args.opponent_id,
        game_id=args.game_id,
        topic_prefix=config.topic_prefix,
    )
    logger.info(f"Game {args.game_id}: {args.user_id} is the {identity.role.value}")

    qt_argv = [sys.argv[0]] + qt_args
    app = QCoreApplication(qt_argv)

    loop_thread = EventLoopThread()
    loop_thread.start()

    media = SoundDeviceMedia.from_config(config)
    if transport_kind == "loopback":
        broker = transport
        controller = _build_controller(config, identity, broker.endpoint(), media)
        opponent = _build_controller(
            config,
            SessionIdentity(
                local_id=args.opponent_id,
                remote_id=args.user_id,
                game_id=args.game_id,
                topic_prefix=config.topic_prefix,
            ),
            broker.endpoint(),
            SoundDeviceMedia.from_config(config),
        )
        loop_thread.submit(opponent.session.open()).result(timeout=5.0)
        loop_thread.submit(opponent.start_call())
    else:
        controller = _build_controller(config, identity, transport, media)
        opponent = None

    loop_thread.submit(controller.session.open()).result(timeout=10.0)

    bridge = VoiceChatBridge(controller, loop_thread)
    frontend = ConsoleFrontend(bridge, app)
    frontend.start()

    if not args.no_auto_start:
        QTimer.singleShot(0, bridge.start_call)

    # Let the Python SIGINT handler run while Qt owns the main thread.
    signal.signal(signal.SIGINT, lambda *_: app.quit())
    tick = QTimer()
    tick.timeout.connect(lambda: None)
    tick.start(200)

    def cleanup():
        logger.info("chess-voice shutting down")
        if opponent is not None:
            future = loop_thread.submit(_close_controller(opponent))
            try:
                future.result(timeout=5.0)
            except Exception as exc:
                logger.error(f"Error closing loopback opponent: {exc}")
        bridge.shutdown()

    app.aboutToQuit.connect(cleanup)

    logger.info("Starting Qt event loop")
    return app.exec()


def main() -> None:
    sys.exit(run_app())


if __name__ == "__main__":
    main()
