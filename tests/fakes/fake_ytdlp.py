"""Sustituto de yt-dlp para los tests: responde según la consulta recibida."""

import json
import sys
import time

STREAM_PAYLOAD = b"\x1aE\xdf\xa3" + bytes(range(256)) * 64

RICK = {
    "id": "dQw4w9WgXcQ",
    "title": "Rick Astley - Never Gonna Give You Up (Official Video)",
    "duration": 212,
    "webpage_url": "https://www.youtube.com/watch?v=dQw4w9WgXcQ",
    "uploader": "Rick Astley",
    "extractor_key": "Youtube",
    "thumbnails": [
        {"url": "https://i.ytimg.com/vi/dQw4w9WgXcQ/default.jpg"},
        {"url": "https://i.ytimg.com/vi/dQw4w9WgXcQ/maxresdefault.jpg"},
    ],
}


def target_query(args):
    if "--" not in args:
        return ""
    target = args[args.index("--") + 1]
    if target.startswith("ytsearch1:"):
        return target.split(":", 1)[1]
    return target


def metadata(query):
    lowered = query.lower()
    if lowered == "nothing":
        print(json.dumps({"_type": "playlist", "entries": []}))
    elif lowered == "garbage":
        print("{esto no es json")
    elif lowered == "notitle":
        print(json.dumps({"_type": "playlist", "entries": [{"duration": 10}]}))
    elif lowered == "crash":
        sys.stderr.write("WARNING: reintentando\nERROR: Video unavailable\n")
        return 1
    elif lowered == "slow":
        time.sleep(30)
    elif "never gonna give you up" in lowered:
        print(json.dumps({"_type": "playlist", "entries": [RICK]}))
    else:
        entry = {
            "title": query.title(),
            "duration": 180,
            "webpage_url": f"https://www.youtube.com/watch?v={abs(hash(query)) % 10**8}",
            "extractor_key": "Youtube",
        }
        print(json.dumps({"_type": "playlist", "entries": [entry]}))
    return 0


def stream(query):
    lowered = query.lower()
    out = sys.stdout.buffer
    if lowered == "crash":
        sys.stderr.write("ERROR: Requested format is not available\n")
        return 1
    if lowered == "silent":
        time.sleep(60)
        return 0
    if lowered == "long":
        while True:
            out.write(b"\x00" * 4096)
            out.flush()
            time.sleep(0.01)
    for offset in range(0, len(STREAM_PAYLOAD), 4096):
        out.write(STREAM_PAYLOAD[offset:offset + 4096])
        out.flush()
    return 0


def main(args):
    if "--version" in args:
        print("2024.08.06")
        return 0
    query = target_query(args)
    if "--dump-single-json" in args:
        return metadata(query)
    return stream(query)


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
