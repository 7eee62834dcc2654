"""Generate small synthetic clips for manually trying compress / extract-frames / merge."""

import subprocess
from pathlib import Path

SAMPLES = [
    # name, duration, size, rate
    ("clip_a.mp4", 5, "1280x720", 30),
    ("clip_b.mp4", 3, "640x480", 25),
    ("portrait.webm", 2, "360x640", 24),
]


def create_sample_videos(output_dir: Path = Path("output/samples")):
    output_dir.mkdir(parents=True, exist_ok=True)

    for name, duration, size, rate in SAMPLES:
        video_path = output_dir / name
        codec = ["-c:v", "libvpx"] if video_path.suffix == ".webm" else ["-c:v", "libx264", "-pix_fmt", "yuv420p"]
        cmd = [
            "ffmpeg", "-y", "-f", "lavfi", "-i", f"testsrc=duration={duration}:size={size}:rate={rate}",
            *codec, str(video_path)
        ]
        subprocess.run(cmd, check=True, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        print(f"Created {video_path} ({size}, {duration}s)")

    print("Try: framestep merge output/samples/clip_a.mp4 output/samples/clip_b.mp4 -o output/merged.webm")

if __name__ == "__main__":
    create_sample_videos()
