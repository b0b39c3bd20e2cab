#!/usr/bin/env python3
"""
Benchmark of the frame transform chain for each dither mode.

Usage:
    python benchmarks/transform_bench.py <path-to-sample-image.jpg> [iterations]

Prints wall-clock time per mode so a default can be picked that fits the
regeneration budget on the target device.
"""
import sys
import time

from frame_render import DitherMode, RenderOptions, dither_mode_name, transform


def bench_mode(img_bytes, mode, iterations=3):
    options = RenderOptions(dither_mode=mode, landscape_only=False)
    t0 = time.time()
    for _ in range(iterations):
        result = transform(img_bytes, options)
    return (time.time() - t0) / iterations, len(result.data)


def main():
    if len(sys.argv) < 2:
        print("Usage: python benchmarks/transform_bench.py sample.jpg [iterations]")
        return
    with open(sys.argv[1], 'rb') as f:
        img_bytes = f.read()
    iterations = int(sys.argv[2]) if len(sys.argv) > 2 else 3
    print('Loaded sample image, running benchmarks...')
    for mode in DitherMode:
        per_run, size = bench_mode(img_bytes, mode, iterations)
        print(f'{dither_mode_name(mode):>20}: {per_run:.3f}s per frame, {size} bytes')

if __name__ == '__main__':
    main()
