#!/usr/bin/env python3
"""
bfbin_fuzz.py - Mutation fuzzer for the Byfl binary-output decoder

Mutates a well-formed seed file and checks that every mutant decodes
either silently successfully or with exactly one error callback, never
raising, and that truncated inputs never decode successfully.

Usage:
    python tools/bfbin_fuzz.py program.byfl               # 10 second fuzz
    python tools/bfbin_fuzz.py program.byfl --duration 60 # 1 minute fuzz
    python tools/bfbin_fuzz.py program.byfl --seed 12345  # Reproducible
"""

import argparse
import logging
import os
import random
import sys
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

sys.path.insert(0, str(Path(__file__).parent))
from bfbin import BfbinCallbacks, MAGIC, process_byfl_file

logger = logging.getLogger(__name__)


@dataclass
class FuzzStats:
    """Statistics from a fuzz run."""
    total_inputs: int = 0
    decode_success: int = 0
    decode_error: int = 0
    crashes: int = 0
    multiple_errors: int = 0
    silent_truncations: int = 0
    duration_sec: float = 0.0
    seed: int = 0
    failing_inputs: List[bytes] = field(default_factory=list)

    @property
    def failures(self) -> int:
        return self.crashes + self.multiple_errors + self.silent_truncations

    @property
    def inputs_per_sec(self) -> float:
        if self.duration_sec > 0:
            return self.total_inputs / self.duration_sec
        return 0.0


def _count_error(errors, message):
    errors.append(message)


class BfbinFuzzer:
    """Fuzz tester for the decoder, driven by a seed file's bytes."""

    def __init__(self, seed_bytes: bytes, seed: Optional[int] = None):
        if not seed_bytes.startswith(MAGIC):
            raise ValueError("Seed is not a Byfl binary-output file")
        self.seed_bytes = seed_bytes
        self.seed = seed if seed is not None else random.randint(0, 2**32)
        self.rng = random.Random(self.seed)
        self.stats = FuzzStats(seed=self.seed)
        # Every callback is set so handler dispatch is exercised too
        self.callbacks = BfbinCallbacks(
            error_cb=_count_error,
            **{name: (lambda *args: None) for name in (
                'table_begin_cb', 'table_basic_cb', 'table_keyval_cb',
                'table_end_cb', 'column_begin_cb', 'column_uint64_cb',
                'column_string_cb', 'column_bool_cb', 'column_end_cb',
                'row_begin_cb', 'data_uint64_cb', 'data_string_cb',
                'data_bool_cb', 'row_end_cb')}
        )

    def truncate(self) -> bytes:
        """Cut the seed strictly before its final terminator."""
        return self.seed_bytes[:self.rng.randint(0, len(self.seed_bytes) - 1)]

    def flip_bytes(self) -> bytes:
        """Overwrite a few bytes after the magic header."""
        data = bytearray(self.seed_bytes)
        if len(data) <= len(MAGIC):
            return bytes(data)
        for _ in range(self.rng.randint(1, 4)):
            pos = self.rng.randint(len(MAGIC), len(data) - 1)
            data[pos] = self.rng.randint(0, 255)
        return bytes(data)

    def insert_bytes(self) -> bytes:
        """Splice random bytes into the body."""
        data = bytearray(self.seed_bytes)
        pos = self.rng.randint(min(len(MAGIC), len(data)), len(data))
        junk = bytes(self.rng.randint(0, 255) for _ in range(self.rng.randint(1, 8)))
        data[pos:pos] = junk
        return bytes(data)

    def mutate(self) -> Tuple[bytes, bool]:
        """Return (mutant, is_truncation)."""
        choice = self.rng.random()
        if choice < 0.4:
            return self.truncate(), True
        if choice < 0.8:
            return self.flip_bytes(), False
        return self.insert_bytes(), False

    def fuzz_one(self, data: bytes, truncated: bool, path: str) -> None:
        """Decode one mutant and classify the outcome."""
        self.stats.total_inputs += 1
        with open(path, 'wb') as f:
            f.write(data)

        errors: List[str] = []
        try:
            process_byfl_file(path, self.callbacks, user_data=errors)
        except Exception as e:
            logger.info("Crash on %d-byte input: %r", len(data), e)
            self.stats.crashes += 1
            self.stats.failing_inputs.append(data)
            return

        if len(errors) > 1:
            self.stats.multiple_errors += 1
            self.stats.failing_inputs.append(data)
        elif errors:
            self.stats.decode_error += 1
        elif truncated:
            self.stats.silent_truncations += 1
            self.stats.failing_inputs.append(data)
        else:
            self.stats.decode_success += 1

    def run(self, duration_sec: float = 10.0,
            max_inputs: Optional[int] = None) -> FuzzStats:
        """Fuzz for `duration_sec` seconds or `max_inputs` mutants."""
        start_time = time.time()
        end_time = start_time + duration_sec

        fd, path = tempfile.mkstemp(suffix='.byfl')
        os.close(fd)
        try:
            while time.time() < end_time:
                if max_inputs is not None and self.stats.total_inputs >= max_inputs:
                    break
                data, truncated = self.mutate()
                self.fuzz_one(data, truncated, path)
        finally:
            os.unlink(path)

        self.stats.duration_sec = time.time() - start_time
        return self.stats


def print_stats(stats: FuzzStats):
    """Print fuzzing statistics."""
    print("\nDecoder Fuzzing Results")
    print("=" * 50)
    print(f"Seed: {stats.seed}")
    print(f"Duration: {stats.duration_sec:.1f}s")
    print(f"Total inputs: {stats.total_inputs}")
    print(f"Rate: {stats.inputs_per_sec:.0f} inputs/sec")
    print(f"Decode success: {stats.decode_success}")
    print(f"Decode errors: {stats.decode_error} (expected)")
    print(f"Crashes: {stats.crashes}")
    print(f"Multiple error reports: {stats.multiple_errors}")
    print(f"Truncations decoded silently: {stats.silent_truncations}")

    if stats.failures > 0:
        print("\nFAILING INPUTS (reproducible with --seed):")
        for i, payload in enumerate(stats.failing_inputs[:5]):
            print(f"  {i+1}: {payload.hex()}")
        print("\nFAILED: Decoder broke its error contract!")
    else:
        print("\nPASSED: No contract violations detected")


def main():
    parser = argparse.ArgumentParser(
        description='Fuzz test the Byfl binary-output decoder'
    )
    parser.add_argument('seed_file', type=Path, help='Well-formed Byfl binary file')
    parser.add_argument('-d', '--duration', type=float, default=10.0,
                        help='Fuzz duration in seconds (default: 10)')
    parser.add_argument('-s', '--seed', type=int,
                        help='Random seed for reproducibility')
    parser.add_argument('-n', '--max-inputs', type=int,
                        help='Stop after this many mutants')
    args = parser.parse_args()

    logging.basicConfig(level=logging.ERROR, stream=sys.stderr)

    seed_bytes = args.seed_file.read_bytes()
    print(f"Fuzzing decoder with seed file: {args.seed_file}")
    fuzzer = BfbinFuzzer(seed_bytes, seed=args.seed)
    stats = fuzzer.run(args.duration, args.max_inputs)
    print_stats(stats)

    sys.exit(1 if stats.failures > 0 else 0)


if __name__ == '__main__':
    main()
