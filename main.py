"""
main.py — Attune application entry point.

Parses CLI args, loads the YAML config, builds the pipeline controller and
runs it headless (commits printed to stdout) or behind the FastAPI web UI.
"""

from __future__ import annotations

import argparse
import sys
import threading
import time
import traceback
from typing import Any, Dict, Optional

# ──────────────────────────────────────────────────────────────
# ASCII banner
# ──────────────────────────────────────────────────────────────

_BANNER = r"""
     _   _   _
    / \ | |_| |_ _   _ _ __   ___
   / _ \| __| __| | | | '_ \ / _ \
  / ___ \ |_| |_| |_| | | | |  __/
 /_/   \_\__|\__|\__,_|_| |_|\___|

      Attune  v1.0
  Facial-signal communication assistant
"""


# ──────────────────────────────────────────────────────────────
# Argument parsing
# ──────────────────────────────────────────────────────────────

def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="attune",
        description="Attune — facial and sound signals to spoken, logged messages",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument(
        "--mode",
        choices=["webcam", "sim"],
        default="sim",
        help="Input mode: 'webcam' for live camera + microphone, 'sim' for a scripted face",
    )
    p.add_argument(
        "--demo",
        choices=["nod", "smile", "distress"],
        default="smile",
        help="Scripted demo sequence (sim mode only)",
    )
    p.add_argument(
        "--patient",
        default="Patient",
        help="Patient name; selects the conversation log",
    )
    p.add_argument(
        "--config",
        default=None,
        help="Path to attune.yaml (default: $ATTUNE_CONFIG or config/attune.yaml)",
    )
    p.add_argument(
        "--no-sound",
        action="store_true",
        help="Start with speech and chime off",
    )
    p.add_argument(
        "--web",
        action="store_true",
        help="Start the FastAPI web UI server",
    )
    p.add_argument(
        "--port",
        type=int,
        default=7860,
        help="Port for the web UI server",
    )
    p.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Headless only: stop after this many seconds",
    )
    return p


# ──────────────────────────────────────────────────────────────
# Controller construction
# ──────────────────────────────────────────────────────────────

def _demo_script(name: str) -> list:
    from input.face_sim import ScriptedFaceSource

    return {
        "nod": ScriptedFaceSource.DEMO_NOD_SCRIPT,
        "smile": ScriptedFaceSource.DEMO_SMILE_SCRIPT,
        "distress": ScriptedFaceSource.DEMO_DISTRESS_SCRIPT,
    }[name]


def _load_controller(args: argparse.Namespace):
    """Load config and instantiate the pipeline controller."""
    from core.config import load_config
    from pipeline.controller import AttuneController

    config = load_config(args.config)
    kwargs: Dict[str, Any] = {}
    if args.no_sound:
        kwargs["chime"] = None
    controller = AttuneController(
        config,
        patient_id=args.patient,
        mode=args.mode,
        demo_script=_demo_script(args.demo) if args.mode == "sim" else None,
        **kwargs,
    )
    if args.no_sound:
        controller.set_speech_enabled(False)
    return controller


# ──────────────────────────────────────────────────────────────
# Headless entry point
# ──────────────────────────────────────────────────────────────

def _print_commit(data: Dict[str, Any]) -> None:
    spoken = "spoken" if data.get("spoken") else "silent"
    print(f"[COMMIT] {data['label']} ({data['category']}, {spoken})", flush=True)


def _run_headless(controller, duration_s: Optional[float]) -> int:
    """Run the controller until Ctrl-C or *duration_s* elapses. Returns exit code."""
    from pipeline.controller import ON_COMMIT

    controller.subscribe(ON_COMMIT, _print_commit)
    ctrl_thread = threading.Thread(
        target=controller.run,
        name="attune-controller",
        daemon=True,
    )
    ctrl_thread.start()
    try:
        if duration_s is None:
            while ctrl_thread.is_alive():
                ctrl_thread.join(timeout=0.5)
        else:
            time.sleep(duration_s)
    except KeyboardInterrupt:
        pass
    finally:
        controller.shutdown()
        ctrl_thread.join(timeout=5.0)
    return 0


# ──────────────────────────────────────────────────────────────
# Web UI entry point
# ──────────────────────────────────────────────────────────────

def _run_web(controller, port: int = 7860) -> int:
    """
    Start the controller in a background thread and the FastAPI web server
    in the main thread.

    Open http://localhost:<port>/ in a browser to see the live dashboard.
    """
    from ui.web_app import start_web_server

    ctrl_thread = threading.Thread(
        target=controller.run,
        name="attune-controller",
        daemon=True,
    )
    ctrl_thread.start()

    print(f"[INFO] Web UI → http://localhost:{port}/")
    print("       Press Ctrl-C to stop.")

    try:
        start_web_server(controller, host="0.0.0.0", port=port)
    except KeyboardInterrupt:
        pass
    finally:
        controller.shutdown()
    return 0


# ──────────────────────────────────────────────────────────────
# Main
# ──────────────────────────────────────────────────────────────

def main(argv: Optional[list] = None) -> int:
    """Application entry point. Returns process exit code."""
    print(_BANNER)

    parser = _build_parser()
    args = parser.parse_args(argv)

    from core.logger import get_logger
    log = get_logger()
    log.info("main", "args_parsed", {
        "mode": args.mode,
        "demo": args.demo,
        "patient": args.patient,
        "web": args.web,
        "no_sound": args.no_sound,
    })

    try:
        controller = _load_controller(args)
    except (FileNotFoundError, ValueError) as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        log.error("main", "config_error", {"error": str(exc)})
        return 2
    log.info("main", "controller_ready", {"class": type(controller).__name__})

    exit_code = 0
    try:
        if args.web:
            print(f"[INFO] Starting web UI — mode={args.mode} port={args.port}")
            exit_code = _run_web(controller, port=args.port)
        else:
            print(f"[INFO] Running headless — mode={args.mode}")
            exit_code = _run_headless(controller, args.duration)
    except Exception:                              # noqa: BLE001
        tb = traceback.format_exc()
        print(tb, file=sys.stderr)
        log.critical("main", "unhandled_exception", {"traceback": tb})
        exit_code = 1
    finally:
        log.flush()

    print(f"[INFO] Attune exited with code {exit_code}")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
