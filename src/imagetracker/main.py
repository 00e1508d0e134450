"""
Main entry point for the imagetracker application.

Runs either the multi-marker planar tracker or the ad-hoc (structure from
motion) tracker on a camera or a video file and shows the tracked features.

Usage:
    imagetracker --markers poster.png cover.png   # Track known markers
    imagetracker --adhoc                          # Track any textured surface
    imagetracker --adhoc --video clip.mp4 --no-display --verbose
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

import cv2
import numpy as np

from .image_tracker import ImageTracker
from .pose import load_calibration
from .tracking.adhoc import AdHocSfMTracker
from .tracking.base import TrackingState
from .utils import get_config, section_config, setup_logging, validate_config

LOGGER = logging.getLogger(__name__)

WINDOW_NAME = "imagetracker"


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="imagetracker - monocular marker and ad-hoc AR tracking",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  imagetracker --markers a.png b.png           # Planar markers from the camera
  imagetracker --model markers.npz             # Reuse a saved marker model
  imagetracker --adhoc --video clip.mp4        # Ad-hoc tracking on a video

Controls:
  N      - New ad-hoc map
  Q/ESC  - Quit
        """,
    )

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--markers", nargs="+", metavar="FILE", help="Marker images to recognise and track")
    mode.add_argument("--adhoc", action="store_true", help="Track an ad-hoc surface instead of markers")

    source = parser.add_mutually_exclusive_group()
    source.add_argument("--video", metavar="PATH", help="Read frames from a video file")
    source.add_argument("--camera", type=int, default=None, metavar="ID", help="Camera index")

    parser.add_argument("--config", metavar="JSON", help="Configuration file merged over the defaults")
    parser.add_argument("--model", metavar="FILE", help="Marker model to load (or save after --markers)")
    parser.add_argument("--no-display", action="store_true", help="Do not open a preview window")
    parser.add_argument("--max-frames", type=int, default=0, help="Stop after this many frames (0 = no limit)")
    parser.add_argument("--verbose", "-V", action="store_true", help="Enable verbose/debug logging")

    args = parser.parse_args(argv)
    if not args.adhoc and not args.markers and not args.model:
        parser.error("one of --markers, --model or --adhoc is required")
    return args


def open_capture(args: argparse.Namespace, config: dict) -> cv2.VideoCapture:
    if args.video:
        capture = cv2.VideoCapture(args.video)
    else:
        camera_id = args.camera if args.camera is not None else config.get("camera_id", 0)
        capture = cv2.VideoCapture(camera_id)
        capture.set(cv2.CAP_PROP_FRAME_WIDTH, config.get("video_width", 640))
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, config.get("video_height", 480))
    if not capture.isOpened():
        raise RuntimeError(f"Could not open video source: {args.video or args.camera}")
    return capture


def build_image_tracker(args: argparse.Namespace, config: dict, calibration) -> ImageTracker:
    tracker = ImageTracker(calibration.camera_matrix, config, dist_coeffs=calibration.dist_coeffs)
    if args.markers:
        tracker.setup(args.markers)
        if args.model:
            tracker.save_model(args.model)
    else:
        tracker.load_model(args.model)
    return tracker


def draw_features(frame: np.ndarray, points: np.ndarray, color) -> None:
    for x, y in np.round(points).astype(int):
        cv2.circle(frame, (int(x), int(y)), 3, color, -1)


def draw_planar(frame: np.ndarray, image_tracker: ImageTracker) -> None:
    for tracker in image_tracker.get_trackers():
        draw_features(frame, tracker.get_tracked_features(), (0, 255, 0))
        quad = tracker.get_marker_quad()
        if quad is not None:
            cv2.polylines(frame, [np.round(quad).astype(np.int32)], True, (0, 200, 255), 2)
            x, y = quad[0]
            cv2.putText(frame, tracker.label, (int(x), int(y) - 8),
                        cv2.FONT_HERSHEY_SIMPLEX, 0.6, (0, 200, 255), 2)


def draw_adhoc(frame: np.ndarray, tracker: AdHocSfMTracker) -> None:
    color = (0, 255, 0) if tracker.state == TrackingState.TRACKING else (0, 165, 255)
    draw_features(frame, tracker.get_tracked_features(), color)
    cv2.putText(frame, tracker.state.value, (10, 25), cv2.FONT_HERSHEY_SIMPLEX, 0.7, color, 2)


def run(args: argparse.Namespace) -> int:
    config = get_config(args.config)
    if not validate_config(config):
        return 1
    calibration = load_calibration(config["calibration"])

    if args.adhoc:
        adhoc = AdHocSfMTracker(
            calibration.camera_matrix,
            section_config(config, "adhoc_tracker"),
            dist_coeffs=calibration.dist_coeffs,
        )
        image_tracker = None
    else:
        adhoc = None
        image_tracker = build_image_tracker(args, config, calibration)

    capture = open_capture(args, config)
    newmap = False
    frame_count = 0
    try:
        while True:
            ok, frame = capture.read()
            if not ok or frame is None:
                LOGGER.info("End of video stream after %d frames", frame_count)
                break
            frame_count += 1

            if adhoc is not None:
                result = adhoc.process(frame, newmap=newmap)
                newmap = False
                if result.pose_updated:
                    LOGGER.debug("Model view:\n%s", adhoc.get_model_view_matrix())
            else:
                label = image_tracker.update(frame)
                if label:
                    LOGGER.info("Recognised marker %r", label)
                for name, model_view in image_tracker.get_model_view_matrices().items():
                    LOGGER.debug("Model view of %r:\n%s", name, model_view)

            if not args.no_display:
                if adhoc is not None:
                    draw_adhoc(frame, adhoc)
                else:
                    draw_planar(frame, image_tracker)
                cv2.imshow(WINDOW_NAME, frame)
                key = cv2.waitKey(1) & 0xFF
                if key in (ord("q"), 27):
                    break
                if key == ord("n"):
                    newmap = True

            if args.max_frames and frame_count >= args.max_frames:
                break
    finally:
        capture.release()
        if image_tracker is not None:
            image_tracker.stop()
        if not args.no_display:
            cv2.destroyAllWindows()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    log_level = logging.DEBUG if args.verbose else logging.INFO
    setup_logging(level=log_level)

    LOGGER.info("Starting imagetracker (%s mode)", "ad-hoc" if args.adhoc else "marker")
    try:
        return run(args)
    except (FileNotFoundError, RuntimeError, ValueError) as e:
        LOGGER.error("%s", e)
        return 1
    except KeyboardInterrupt:
        LOGGER.info("Interrupted")
        return 0


if __name__ == "__main__":
    sys.exit(main())
