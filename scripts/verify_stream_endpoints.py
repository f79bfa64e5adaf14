import os
import sys
import time

import requests

BASE_URL = os.environ.get("CLIPSTREAM_URL", "http://localhost:5001")
CHUNK_SIZE = 1024 * 1024


def check(name, response, expected_status, expected_headers=None):
    print(f"Testing {name}...", end=" ")
    if response.status_code != expected_status:
        print(f"❌ FAILED! Status: {response.status_code} (expected {expected_status})")
        return False
    for key, value in (expected_headers or {}).items():
        if response.headers.get(key) != value:
            print(f"❌ FAILED! {key}: {response.headers.get(key)!r} (expected {value!r})")
            return False
    print(f"✅ {expected_status}")
    return True


def upload_probe_video(size):
    """Uploads a synthetic clip in 1MB chunks and finalizes it. Returns (stored name, payload)."""
    payload = os.urandom(size)
    filename = f"verify_{int(time.time())}.mp4"
    total = (size + CHUNK_SIZE - 1) // CHUNK_SIZE

    for n in range(1, total + 1):
        chunk = payload[(n - 1) * CHUNK_SIZE:n * CHUNK_SIZE]
        r = requests.post(
            f"{BASE_URL}/videos/upload-chunk",
            data={"chunkNumber": n, "totalChunks": total, "filename": filename, "fileSize": size},
            files={"chunk": ("blob", chunk)},
            timeout=10,
        )
        r.raise_for_status()

    r = requests.post(
        f"{BASE_URL}/videos/finalize-upload",
        json={"filename": filename, "totalChunks": total, "fileSize": size},
        timeout=30,
    )
    r.raise_for_status()
    return r.json()["filename"], payload


def verify_all():
    print(f"🎬 Verifying streaming and upload endpoints at {BASE_URL}...")

    try:
        name, payload = upload_probe_video(2 * CHUNK_SIZE + 12345)
    except requests.RequestException as e:
        print(f"❌ Upload failed: {e}")
        sys.exit(1)
    size = len(payload)
    url = f"{BASE_URL}/videos/stream/{name}"

    results = []
    r = requests.get(url, timeout=10)
    results.append(check("Full stream", r, 200, {"Content-Length": str(size), "Accept-Ranges": "bytes"})
                   and r.content == payload)

    r = requests.get(url, headers={"Range": "bytes=100-199"}, timeout=10)
    results.append(check("Range stream", r, 206, {"Content-Range": f"bytes 100-199/{size}"})
                   and r.content == payload[100:200])

    r = requests.get(url, headers={"Range": f"bytes={size}-"}, timeout=10)
    results.append(check("Unsatisfiable range", r, 416, {"Content-Range": f"bytes */{size}"}))

    r = requests.get(url, headers={"Range": "bytes=abc-"}, timeout=10)
    results.append(check("Malformed range", r, 400))

    r = requests.get(f"{BASE_URL}/videos/stream/does-not-exist.mp4", timeout=10)
    results.append(check("Missing video", r, 404))

    if all(results):
        print(f"\n🎉 ALL ENDPOINTS BEHAVE AS EXPECTED! (probe video: {name})")
        sys.exit(0)
    else:
        print("\n❌ SOME ENDPOINTS MISBEHAVED.")
        sys.exit(1)


if __name__ == "__main__":
    verify_all()
