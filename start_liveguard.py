"""
LiveGuard - Launcher
====================
Runs one face capture session against a camera or a video file and prints
the engine's events.

Usage:
  python start_liveguard.py                          (camera 0, config.yaml)
  python start_liveguard.py --source 1               (plug-in camera)
  python start_liveguard.py --source clip.mp4 --headless
  python start_liveguard.py --actions blink,nod --debug
"""

import argparse
import os
import sys
import time

os.environ["TF_CPP_MIN_LOG_LEVEL"] = "3"  # MediaPipe C++ log noise
os.environ["GLOG_minloglevel"] = "2"

import cv2

sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from liveguard_engine import CaptureEngine
from liveguard_perception import MediaPipePerceptionProvider
from liveguard_types import (
    DetectorDebugEvent,
    DetectorFinishEvent,
    LiveGuardError,
)
from liveguard_utils_core import load_config, setup_logger

_log = setup_logger('GuardLaunch')

WINDOW_NAME = "LiveGuard"
DEFAULT_CONFIG_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'config.yaml')


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="LiveGuard face liveness capture")
    parser.add_argument("--source", type=str, default="0",
                        help="Camera index or video file / stream URL (default: 0)")
    parser.add_argument("--config", type=str, default=DEFAULT_CONFIG_PATH,
                        help="YAML option overrides (default: config.yaml next to this script)")
    parser.add_argument("--model", type=str, default=None,
                        help="Path to the MediaPipe face_landmarker.task model")
    parser.add_argument("--headless", action="store_true", help="No preview window")
    parser.add_argument("--debug", action="store_true", help="Emit debug events")
    parser.add_argument("--actions", type=str, default=None,
                        help="Comma separated challenge actions (blink,mouth_open,nod)")
    return parser.parse_args(argv)


def build_options(args) -> dict:
    options = {}
    if args.config and os.path.exists(args.config):
        options.update(load_config(args.config))
        _log.info("Loaded options from %s", args.config)
    if args.model:
        options["perception_landmarker_model"] = args.model
    if args.debug:
        options["debug_mode"] = True
    if args.actions:
        actions = [a.strip() for a in args.actions.split(",") if a.strip()]
        options["action_liveness_action_list"] = actions
        options["action_liveness_action_count"] = len(actions)
    return options


def print_event(event):
    if isinstance(event, DetectorFinishEvent):
        print(f"[LIVEGUARD] FINISH success={event.success} "
              f"silent={event.silent_passed_count} actions={event.action_passed_count} "
              f"best_quality={event.best_quality_score:.2f} time={event.total_time_ms:.0f}ms")
    elif isinstance(event, DetectorDebugEvent):
        print(f"[LIVEGUARD] debug/{event.level} {event.stage}: {event.message}")
    else:
        fields = {k: v for k, v in vars(event).items() if k not in ("timestamp", "metrics")}
        print(f"[LIVEGUARD] {type(event).__name__} {fields}")


def main(argv=None) -> int:
    args = parse_args(argv)
    options = build_options(args)
    source = int(args.source) if args.source.isdigit() else args.source

    engine = CaptureEngine(options)
    engine.perception = MediaPipePerceptionProvider(
        model_path=engine.options["perception_landmarker_model"],
        max_faces=engine.options["perception_max_faces"],
        min_detection_confidence=engine.options["perception_min_detection_confidence"],
    )

    print("=" * 60)
    print("  LiveGuard - Starting...")
    print(f"  Source:  {source}")
    print(f"  Model:   {engine.options['perception_landmarker_model']}")
    print(f"  Actions: {engine.options['action_liveness_action_list']}")
    print("=" * 60)

    exit_code = 1
    try:
        if not engine.initialize():
            for event in engine.drain_events():
                print_event(event)
            return 1

        engine.start_detection(source)
        if not args.headless:
            cv2.namedWindow(WINDOW_NAME, cv2.WINDOW_NORMAL)

        while engine.tick():
            for event in engine.drain_events():
                print_event(event)
                if isinstance(event, DetectorFinishEvent):
                    exit_code = 0 if event.success else 1

            if not args.headless:
                frame = engine.buffers.current_color
                if frame is not None:
                    cv2.imshow(WINDOW_NAME, frame)
                key = cv2.waitKey(max(1, int(engine.next_delay_s * 1000))) & 0xFF
                if key in (ord('q'), ord('Q'), 27):
                    print("\n[LIVEGUARD] Exit key pressed - shutting down...")
                    break
            elif engine.next_delay_s > 0:
                time.sleep(engine.next_delay_s)

        for event in engine.drain_events():
            print_event(event)
            if isinstance(event, DetectorFinishEvent):
                exit_code = 0 if event.success else 1

    except LiveGuardError as e:
        print(f"[LIVEGUARD] {e.code.value}: {e}")
    except KeyboardInterrupt:
        print("\n[LIVEGUARD] Interrupted by user.")
    finally:
        print("[LIVEGUARD] Cleaning up...")
        engine.close()
        if not args.headless:
            cv2.destroyAllWindows()
        print("[LIVEGUARD] Shutdown complete.")

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
