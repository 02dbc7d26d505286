import asyncio
import json
import sys
import wave
import numpy as np
import websockets


async def test(wav_path=None, preset="direct"):
    uri = "ws://localhost:8000/dictation"
    async with websockets.connect(uri, close_timeout=2) as ws:
        await ws.send(json.dumps({
            "type": "start",
            "stream_id": "live-test",
            "sample_rate": 16000,
            "encoding": "pcm_s16le",
            "channels": 1,
            "chunk_preset": preset,
        }))
        print("Sent start")

        if wav_path:
            with wave.open(wav_path, "rb") as wf:
                print(f"WAV: {wf.getnchannels()}ch, {wf.getframerate()}Hz, {wf.getnframes()} frames")
                data = wf.readframes(wf.getnframes())
        else:
            t = np.arange(16000 * 3, dtype=np.float32) / 16000
            tone = (np.sin(2 * np.pi * 440 * t) * 16000).astype(np.int16)
            data = tone.tobytes()

        # 30 ms frames, paced roughly like a live microphone
        frame_size = 480 * 2
        for i in range(0, len(data), frame_size):
            await ws.send(data[i:i + frame_size])
            await asyncio.sleep(0.01)
        print(f"Sent {len(data) // 2 / 16000:.1f}s of audio")

        await ws.send(json.dumps({"type": "end", "stream_id": "live-test"}))
        print("Sent end, waiting...\n")

        async for msg in ws:
            resp = json.loads(msg)
            print(json.dumps(resp, indent=2, ensure_ascii=False))
            if resp.get("type") in ("transcript_complete", "error"):
                break

    print("\nDone.")


if __name__ == "__main__":
    path = sys.argv[1] if len(sys.argv) > 1 else None
    try:
        asyncio.run(test(path))
    except websockets.exceptions.ConnectionClosedError:
        pass
