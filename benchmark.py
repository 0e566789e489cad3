#!/usr/bin/env python3
"""
Benchmark runner for digit map generation.

Builds synthetic dialplans from the shapes described in a YAML config and
times how long generating their digit maps takes.

Orchestrates:
1. Building a dialplan tree per benchmark (depth, fanout, extensions)
2. Generating the digit map repeatedly
3. Reporting timings, optionally as JSON
"""

import argparse
import json
import statistics
import sys
import time
import yaml
from pathlib import Path

from dialplan import Dialplan, Include
from dialplan_to_digitmap import DigitMapError, GeneratorConfig, MapGenerator

EXTENSION_PATTERNS = ["_NXXXXXX", "_1NXXNXXXXXX", "_011X.", "_[2-5]XX", "911", "_*XX"]


def build_dialplan(shape: dict) -> tuple[Dialplan, int]:
    """Build a tree of contexts.

    Every context holds `extensions` extensions and includes `fanout`
    children, down to `depth` levels. Includes carry `prefix` when set.
    `cycles: true` adds an include back to the root from every leaf.

    Returns:
        The dialplan and the number of contexts in it
    """
    depth = shape.get("depth", 1)
    fanout = shape.get("fanout", 1)
    extensions = shape.get("extensions", 10)
    prefix = str(shape.get("prefix", ""))
    cycles = shape.get("cycles", False)

    dialplan = Dialplan()
    level = [dialplan.add_context("root")]
    count = 1
    for d in range(1, depth + 1):
        next_level = []
        for parent in level:
            for i in range(extensions):
                parent.add_extension(EXTENSION_PATTERNS[i % len(EXTENSION_PATTERNS)], 1)
            if d == depth:
                if cycles:
                    parent.add_include("root")
                continue
            for f in range(fanout):
                child = dialplan.add_context(f"{parent.name}-{f}")
                args = ("", prefix) if prefix else ()
                parent.add_include(Include(child.name, args))
                next_level.append(child)
                count += 1
        level = next_level
    return dialplan, count


def run_benchmark(benchmark: dict, iterations: int, verbose: bool = False) -> dict | None:
    """Time digit map generation for one benchmark shape."""
    name = benchmark.get("name", "unnamed")
    try:
        config = GeneratorConfig.from_mapping(benchmark.get("config"))
    except (TypeError, ValueError) as e:
        print(f"Error: Benchmark '{name}' has invalid config: {e}", file=sys.stderr)
        return None

    dialplan, contexts = build_dialplan(benchmark)
    generator = MapGenerator(dialplan, config)

    print(f"\n{'='*60}")
    print(f"Benchmark: {name}")
    print(f"Contexts: {contexts}, Iterations: {iterations}, Buffer: {config.buffer_size}")
    print(f"{'='*60}")

    timings = []
    length = 0
    for i in range(iterations):
        buffer = bytearray(config.buffer_size)
        start = time.perf_counter()
        try:
            length = generator.generate("root", buffer)
        except DigitMapError as e:
            print(f"Generation failed: {e}", file=sys.stderr)
            return None
        elapsed = (time.perf_counter() - start) * 1000
        timings.append(elapsed)
        if verbose:
            print(f"  [{i + 1}/{iterations}] {elapsed:.3f}ms")

    results = {
        "name": name,
        "contexts": contexts,
        "iterations": iterations,
        "map_length": length,
        "min_ms": min(timings),
        "mean_ms": statistics.mean(timings),
        "max_ms": max(timings),
    }
    print(f"Digit map length: {length} bytes")
    print(f"Min:  {results['min_ms']:.3f}ms")
    print(f"Mean: {results['mean_ms']:.3f}ms")
    print(f"Max:  {results['max_ms']:.3f}ms")
    return results


def main():
    parser = argparse.ArgumentParser(
        description="Benchmark digit map generation on synthetic dialplans",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Config file format (YAML):

benchmarks:
  - name: wide
    depth: 2                # Levels of includes
    fanout: 20              # Includes per context
    extensions: 5           # Extensions per context
    prefix: "9"             # Prefix on every include (optional)
    cycles: false           # Leaves include the root again (optional)
    config:
      buffer_size: 65536    # Generator settings (optional)

Example usage:
    python benchmark.py                      # Run all benchmarks
    python benchmark.py -n wide              # Run only the 'wide' benchmark
    python benchmark.py -i 500               # More iterations
    python benchmark.py -o results/          # Save JSON results to directory
"""
    )
    parser.add_argument("--config", "-c", default="benchmarks.yaml",
                        help="YAML config file (default: benchmarks.yaml)")
    parser.add_argument("--name", "-n", help="Run only the benchmark with this name")
    parser.add_argument("--iterations", "-i", type=int, default=100,
                        help="Generations per benchmark (default: 100)")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Verbose output (show per-iteration timing)")
    parser.add_argument("--list", "-l", action="store_true", help="List available benchmarks")
    parser.add_argument("--output", "-o", help="Save JSON results to file or directory")

    args = parser.parse_args()

    config_path = Path(args.config)
    if not config_path.exists():
        print(f"Error: Config file not found: {config_path}")
        print("Create a benchmarks.yaml file or specify one with --config")
        sys.exit(1)

    with open(config_path, encoding='utf-8') as f:
        config = yaml.safe_load(f)

    if not isinstance(config, dict) or not isinstance(config.get("benchmarks"), list):
        print(f"Error: Expected dict in config file with a 'benchmarks' list", file=sys.stderr)
        sys.exit(1)

    benchmarks = config["benchmarks"]

    if args.list:
        print(f"Available benchmarks in {config_path}:")
        for b in benchmarks:
            print(f"  - {b.get('name', 'unnamed')}: depth={b.get('depth', 1)}, "
                  f"fanout={b.get('fanout', 1)}, extensions={b.get('extensions', 10)}")
        sys.exit(0)

    if args.name:
        benchmarks = [b for b in benchmarks if b.get("name") == args.name]
        if not benchmarks:
            print(f"Error: No benchmark named '{args.name}' found")
            sys.exit(1)

    if args.iterations < 1:
        print("Error: --iterations must be at least 1", file=sys.stderr)
        sys.exit(1)

    all_success = True
    all_results = []
    for benchmark in benchmarks:
        results = run_benchmark(benchmark, args.iterations, args.verbose)
        if results is None:
            all_success = False
            continue
        all_results.append(results)

    if args.output:
        output_path = Path(args.output)
        if output_path.is_dir() or args.output.endswith('/') or args.output.endswith('\\'):
            output_path = output_path / "digitmap_benchmark.json"
            output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, 'w', encoding='utf-8') as f:
            json.dump(all_results, f, indent=2)
        print(f"\nResults saved to: {output_path}")

    print(f"\n{'='*60}")
    if all_success:
        print(f"ALL {len(all_results)} BENCHMARK RUN(S) COMPLETED SUCCESSFULLY")
    else:
        print(f"SOME BENCHMARKS FAILED")
    print(f"{'='*60}")

    sys.exit(0 if all_success else 1)


if __name__ == "__main__":
    main()
