"""
CLI to detect the emotion in a photo -> JSON.
"""
from __future__ import annotations
import argparse, asyncio, json
from pathlib import Path
from aurasync.camera import OpenCVMediaProvider
from aurasync.capture import CaptureSessionController
from aurasync.config import Settings
from aurasync.emotion import DeepFaceOracle
from aurasync.errors import InvalidImage, NoFaceDetected
from aurasync.music import sample_tracks

def main():
    p = argparse.ArgumentParser()
    p.add_argument("--image", required=True, help="Path to input photo")
    p.add_argument("--out", default=None, help="Optional path to output JSON")
    p.add_argument("--annotated", default=None, help="Optional path to write the annotated photo (JPEG)")
    args = p.parse_args()

    settings = Settings()
    ctl = CaptureSessionController(OpenCVMediaProvider(settings), DeepFaceOracle(settings), settings)
    try:
        event = asyncio.run(ctl.upload_image(Path(args.image).read_bytes()))
    except (NoFaceDetected, InvalidImage) as e:
        print(json.dumps({"error": e.kind, "message": str(e)}, indent=2))
        raise SystemExit(2)

    result = {
        "detection": event.model_dump(mode="json"),
        "sample_tracks": [t.model_dump() for t in sample_tracks(event.emotion)],
    }
    print(json.dumps(result, indent=2, ensure_ascii=False))

    if args.annotated:
        jpeg = ctl.surface.encode_jpeg()
        if jpeg:
            Path(args.annotated).write_bytes(jpeg)
    if args.out:
        out = Path(args.out)
        out.parent.mkdir(parents=True, exist_ok=True)
        with open(out, "w", encoding="utf-8") as f:
            json.dump(result, f, indent=2, ensure_ascii=False)
        print(f"✅ Result written to {out}")

if __name__ == "__main__":
    main()
