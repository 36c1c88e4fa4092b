"""
Main entrypoint for the padlink gamepad emulator.

Usage:
    sudo python3 -m padlink --mode ble --name AGamepad
    python3 -m padlink --mode udp --input-device none
"""

import argparse
import logging
import signal
import sys
import threading
from typing import Callable, Optional

from gi.repository import GLib

from .config import Settings
from .input_handler import InputHandler
from .manager import ConnectionManager, transport_factories
from .report import Button, StateBuilder, TriggerPolicy, encode
from .transport import ConnectionState, Mode

logger = logging.getLogger(__name__)

AXIS_NAMES = {"lx": "left_x", "ly": "left_y", "rx": "right_x", "ry": "right_y"}


class GamepadApp:
    """
    Runs the connection manager on a GLib main loop, forwards the physical
    controller and offers a small CLI for driving the pad by hand.
    """

    def __init__(
        self,
        settings: Settings,
        mode: Optional[Mode] = None,
        static_addr: Optional[str] = None,
        verbose: bool = False,
    ):
        self.settings = settings
        self.mode = mode or settings.mode
        self.verbose = verbose

        self.builder = StateBuilder()
        self.manager = ConnectionManager(
            settings,
            transport_factories(settings, static_addr=static_addr, verbose=verbose),
        )
        self.manager.add_state_listener(self._on_state)
        self.manager.add_devices_listener(self._on_devices)

        self._input_handler: Optional[InputHandler] = None
        self._main_loop: Optional[GLib.MainLoop] = None
        self._loop_thread: Optional[threading.Thread] = None
        self._shutting_down = False

    def run(self) -> int:
        """Run until quit. Returns exit code."""
        logger.info(f"Starting padlink: mode={self.mode.value}, name={self.settings.device_name}")

        self._main_loop = GLib.MainLoop()
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        # BlueZ objects must be exported from the loop's thread
        if not self.call_in_loop(lambda: self.manager.switch_mode(self.mode), start_loop=True):
            logger.error(f"Could not start {self.mode.value} transport")
            self._stop_loop()
            return 1
        if self.manager.connection_state is ConnectionState.ERROR:
            logger.error(f"{self.mode.value} transport failed to start")
            self._stop_loop()
            return 1

        self._start_input()
        threading.Thread(target=self._cli_loop, name="cli", daemon=True).start()
        self._print_cli_help()

        while self._loop_thread.is_alive():
            self._loop_thread.join(0.5)
        return 0

    # ------------------------------------------------------------------
    # Main loop plumbing

    def call_in_loop(self, fn: Callable, start_loop: bool = False, timeout: float = 30.0):
        """Run ``fn`` on the GLib loop thread and wait for its result."""
        done = threading.Event()
        result = {}

        def runner():
            try:
                result["value"] = fn()
            except Exception as e:
                logger.error(f"Main loop call failed: {e}")
                result["value"] = None
            done.set()
            return False

        GLib.idle_add(runner)
        if start_loop:
            self._loop_thread = threading.Thread(target=self._main_loop.run, name="glib-main", daemon=True)
            self._loop_thread.start()
        done.wait(timeout)
        return result.get("value")

    def _signal_handler(self, sig, frame) -> None:
        logger.info("Received shutdown signal")
        threading.Thread(target=self.shutdown, daemon=True).start()

    def shutdown(self) -> None:
        if self._shutting_down:
            return
        self._shutting_down = True
        logger.info("Shutting down...")
        if self._input_handler:
            self._input_handler.stop()
            self._input_handler = None
        self.call_in_loop(self.manager.shutdown, timeout=10.0)
        self._stop_loop()

    def _stop_loop(self) -> None:
        if self._main_loop and self._main_loop.is_running():
            self._main_loop.quit()

    # ------------------------------------------------------------------
    # Input

    def _start_input(self) -> None:
        device = self.settings.input_device
        if device == "none":
            logger.info("Physical input forwarding disabled")
            return
        self._input_handler = InputHandler(
            self.builder,
            device_path=None if device == "auto" else device,
            on_change=self.manager.send_input,
            verbose=self.verbose,
        )
        if not self._input_handler.start():
            logger.warning("Could not start input handler, CLI-only mode")
            self._input_handler = None

    def _push(self) -> None:
        self.manager.send_input(self.builder.snapshot())

    def _on_state(self, mode: Mode, state: ConnectionState) -> None:
        print(f"[{mode.value}] {state.value}")

    def _on_devices(self, devices) -> None:
        if self.verbose:
            logger.debug(f"Devices: {[d.address for d in devices]}")

    # ------------------------------------------------------------------
    # CLI

    def _print_cli_help(self) -> None:
        print("\n--- CLI Commands ---")
        print("  b <name|0-15>        : Toggle button (e.g. 'b a', 'b start')")
        print("  a <lx|ly|rx|ry> <v>  : Set stick axis 0-255 (127 = center)")
        print("  t <l|r> <v|none>     : Set analog trigger 0-255")
        print("  h <0-8>              : Set hat (0 = up, clockwise, 8 = center)")
        print("  0                    : Reset to neutral")
        print("  m <classic|ble|udp>  : Switch transport")
        print("  d                    : Discover servers (udp)")
        print("  c <address>          : Connect")
        print("  r                    : Reconnect to last server (udp)")
        print("  x [address]          : Disconnect")
        print("  p                    : List paired hosts")
        print("  n [name]             : Show or set Bluetooth name (ble)")
        print("  s                    : Show current state")
        print("  q                    : Quit")
        print("--------------------\n")

    def _cli_loop(self) -> None:
        while not self._shutting_down:
            try:
                line = input().strip()
            except EOFError:
                break
            if not line:
                continue
            parts = line.split()
            # names keep their case
            if parts[0].lower() != "n":
                parts = [p.lower() for p in parts]
            if parts[0] == "q":
                self.shutdown()
                break
            try:
                self.handle_command(parts)
            except ValueError as e:
                print(f"Invalid input: {e}")

    def handle_command(self, parts) -> None:
        cmd, args = parts[0].lower(), parts[1:]
        if cmd == "b" and args:
            bit = int(args[0]) if args[0].isdigit() else Button.by_name(args[0])
            pressed = self.builder.toggle_button(bit)
            print(f"Button {args[0]} {'pressed' if pressed else 'released'}")
            self._push()
        elif cmd == "a" and len(args) >= 2 and args[0] in AXIS_NAMES:
            self.builder.set_axis(AXIS_NAMES[args[0]], int(args[1]))
            self._push()
        elif cmd == "t" and len(args) >= 2 and args[0] in ("l", "r"):
            value = None if args[1] == "none" else int(args[1])
            self.builder.set_trigger("left_trigger" if args[0] == "l" else "right_trigger", value)
            self._push()
        elif cmd == "h" and args:
            self.builder.set_hat(int(args[0]))
            self._push()
        elif cmd == "0":
            self.builder.reset()
            self._push()
        elif cmd == "m" and args:
            mode = Mode.parse(args[0])
            self.call_in_loop(lambda: self.manager.set_mode(mode))
        elif cmd == "d":
            for device in self.manager.discover():
                print(f"  {device.address}  {device.name}")
        elif cmd == "c" and args:
            ok = self._transport_call(lambda: self.manager.connect(args[0]))
            print("Connected" if ok else "Connect failed")
        elif cmd == "r":
            transport = self.manager.transport
            if transport is not None and hasattr(transport, "reconnect_last"):
                print("Reconnected" if transport.reconnect_last() else "Reconnect failed")
            else:
                print("Reconnect is only available in udp mode")
        elif cmd == "x":
            address = args[0] if args else None
            self._transport_call(lambda: self.manager.disconnect(address))
        elif cmd == "p":
            for device in self.manager.paired_devices():
                print(f"  {device.address}  {device.name}")
        elif cmd == "n":
            self._name_command(args)
        elif cmd == "s":
            self._show_state()
        else:
            self._print_cli_help()

    def _transport_call(self, fn: Callable):
        # UDP blocks on sockets; Bluetooth calls need the loop thread
        if self.manager.mode is Mode.UDP:
            return fn()
        return self.call_in_loop(fn)

    def _name_command(self, args) -> None:
        transport = self.manager.transport
        if transport is None or not hasattr(transport, "get_bluetooth_name"):
            print("Bluetooth name is only available in ble mode")
            return
        if args:
            name = " ".join(args)
            ok = self.call_in_loop(lambda: transport.set_bluetooth_name(name))
            print(f"Name set to {name}" if ok else "Could not set name")
        else:
            print(self.call_in_loop(transport.get_bluetooth_name))

    def _show_state(self) -> None:
        state = self.builder.snapshot()
        transport = self.manager.transport
        print(f"\nMode: {self.manager.mode.value if self.manager.mode else '-'}")
        print(f"Connection: {self.manager.connection_state.value}")
        print(f"Buttons: 0x{state.buttons:04X} (binary: {state.buttons:016b})")
        print(f"Sticks: L=({state.left_x},{state.left_y}) R=({state.right_x},{state.right_y})")
        print(f"Triggers: L={state.left_trigger} R={state.right_trigger}  Hat: {state.hat}")
        if transport is not None:
            report = encode(state, transport.report_variant, self.manager.trigger_policy)
            print(f"Report: {report.hex()}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Gamepad emulator over classic Bluetooth HID, BLE HID-over-GATT or UDP",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    sudo python3 -m padlink --mode ble --name AGamepad
    sudo python3 -m padlink --mode classic --input-device /dev/input/event6
    python3 -m padlink --mode udp --trigger-policy analog

Verification commands (run in another terminal):
    # Check advertisement is active:
    busctl --system get-property org.bluez /org/bluez/hci0 \\
        org.bluez.LEAdvertisingManager1 ActiveInstances
""",
    )
    parser.add_argument("--mode", choices=[m.value for m in Mode],
                        help="Transport to start with (default: last used, else ble)")
    parser.add_argument("--name", help="Device name shown to hosts (default: AGamepad)")
    parser.add_argument("--adapter", help="Bluetooth adapter name (default: hci0)")
    parser.add_argument("--input-device",
                        help="evdev device for physical controller forwarding ('auto' or 'none')")
    parser.add_argument("--trigger-policy", choices=[p.value for p in TriggerPolicy],
                        help="How L2/R2 axes are filled in udp mode (default: digital)")
    parser.add_argument("--static-addr",
                        help="Static random BLE address so hosts keep recognising the pad")
    parser.add_argument("--config", help="Settings file (default: ~/.config/padlink/padlink.ini)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    return parser


def main(argv=None):
    """Main entrypoint."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    settings = Settings(args.config)
    if args.name:
        settings.device_name = args.name
    if args.adapter:
        settings.adapter = args.adapter
    if args.input_device:
        settings.input_device = args.input_device
    if args.trigger_policy:
        settings.trigger_policy = TriggerPolicy(args.trigger_policy)

    app = GamepadApp(
        settings,
        mode=Mode.parse(args.mode) if args.mode else None,
        static_addr=args.static_addr,
        verbose=args.verbose,
    )
    sys.exit(app.run())


if __name__ == "__main__":
    main()
