import numpy as np

BYTES_PER_SAMPLE = 2  # PCM_16


def float_to_pcm16(samples: np.ndarray) -> bytes:
    """Convert float32 samples in [-1, 1] to little-endian 16-bit PCM bytes."""
    clipped = np.clip(samples.reshape(-1), -1.0, 1.0)
    return (clipped * 32767.0).astype("<i2").tobytes()


def samples_per_chunk(sample_rate: int, chunk_ms: int) -> int:
    return int(sample_rate * chunk_ms / 1000)


def chunk_byte_size(sample_rate: int, chunk_ms: int) -> int:
    return samples_per_chunk(sample_rate, chunk_ms) * BYTES_PER_SAMPLE


def split_complete_chunks(pending: bytes, chunk_bytes: int) -> tuple[list[bytes], bytes]:
    """Cut *pending* into whole chunks of *chunk_bytes*; return (chunks, remainder).

    Pure function. The capture callback feeds blocks of arbitrary size; only
    complete chunks leave the capture session, the remainder waits for more audio.
    """
    chunks: list[bytes] = []
    pos = 0
    while pos + chunk_bytes <= len(pending):
        chunks.append(pending[pos:pos + chunk_bytes])
        pos += chunk_bytes
    return chunks, pending[pos:]
