"""Command line interface for pbnkit."""
import argparse
import json
import logging
import sys
from pathlib import Path

from pbnkit.cache import ProcessingCache
from pbnkit.effects import EFFECTS
from pbnkit.pipeline import MIN_REGION_RANGE, NUM_COLORS_RANGE, PaintByNumbersPipeline
from pbnkit.renderer import save_png
from pbnkit.svg_export import save_svg
from pbnkit.types import PaintByNumbersError, PBNConfig
from pbnkit.worker_host import WorkerHost


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser."""
    parser = argparse.ArgumentParser(
        prog='pbnkit',
        description='Turn a photo into a paint-by-numbers template'
    )

    parser.add_argument(
        'input',
        type=str,
        help='Input image path'
    )

    parser.add_argument(
        '-o', '--output',
        type=str,
        help='Output directory (default: <input stem>_pbn next to the input)'
    )

    parser.add_argument(
        '--colors',
        type=int,
        default=16,
        help=f'Number of palette colors, typically {NUM_COLORS_RANGE[0]}-{NUM_COLORS_RANGE[1]} (default: 16)'
    )

    parser.add_argument(
        '--min-region',
        type=int,
        default=50,
        help=f'Minimum region size in pixels, typically {MIN_REGION_RANGE[0]}-{MIN_REGION_RANGE[1]} (default: 50)'
    )

    parser.add_argument(
        '--smoothness',
        type=int,
        default=2,
        help='Boundary smoothing rounds, 0-100 (default: 2)'
    )

    parser.add_argument(
        '--artistic',
        action='store_true',
        help='Run the perceptual merge pass after smoothing'
    )

    parser.add_argument(
        '--merge-tolerance',
        type=float,
        default=8.0,
        help='Delta E tolerance for the artistic pass, 1-30 (default: 8)'
    )

    parser.add_argument(
        '--min-merge-area',
        type=int,
        default=None,
        help='Regions below this area always merge in the artistic pass (default: --min-region)'
    )

    parser.add_argument(
        '--effect',
        choices=EFFECTS,
        default='none',
        help='Painterly effect applied to the preview (default: none)'
    )

    parser.add_argument(
        '--effect-intensity',
        type=float,
        default=50.0,
        help='Effect strength, 0-100 (default: 50)'
    )

    parser.add_argument(
        '--svg-group',
        action='store_true',
        help='Group SVG paths into one <g> per palette color'
    )

    parser.add_argument(
        '--svg-metadata',
        action='store_true',
        help='Embed an RDF metadata block in the SVG'
    )

    parser.add_argument(
        '--svg-padding',
        type=float,
        default=0.0,
        help='Margin around the SVG viewBox in pixels (default: 0)'
    )

    parser.add_argument(
        '--max-dimension',
        type=int,
        default=1200,
        help='Downscale so the longest side is at most this (default: 1200)'
    )

    parser.add_argument(
        '--worker',
        action='store_true',
        help='Run the pipeline in a supervised worker process'
    )

    parser.add_argument(
        '--timeout',
        type=float,
        default=30.0,
        help='Pipeline deadline in seconds (default: 30)'
    )

    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Verbose logging'
    )

    return parser


def print_progress(stage: str, percent: float) -> None:
    print(f"  [{percent:5.1f}%] {stage}")


def write_outputs(result, output_dir: Path) -> None:
    """Write rasters, SVG and the project JSON into output_dir."""
    output_dir.mkdir(parents=True, exist_ok=True)
    save_png(result.colorized, output_dir / 'colorized.png')
    save_png(result.contours, output_dir / 'contours.png')
    save_png(result.numbered, output_dir / 'numbered.png')
    save_png(result.preview, output_dir / 'preview.png')
    save_svg(result.svg, str(output_dir / 'template.svg'))
    with open(output_dir / 'project.json', 'w', encoding='utf-8') as f:
        json.dump(result.to_dict(), f, indent=2)


def main(args=None):
    """Main entry point."""
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    logging.basicConfig(
        level=logging.DEBUG if parsed_args.verbose else logging.WARNING,
        format='%(levelname)s %(name)s: %(message)s'
    )

    input_path = Path(parsed_args.input)
    if not input_path.exists():
        print(f"Error: Input file not found: {input_path}", file=sys.stderr)
        return 1

    if parsed_args.output:
        output_dir = Path(parsed_args.output)
    else:
        output_dir = input_path.with_name(f"{input_path.stem}_pbn")

    config = PBNConfig(
        max_dimension=parsed_args.max_dimension,
        pipeline_timeout=parsed_args.timeout,
        worker_timeout=parsed_args.timeout + 5,
        preview_effect=parsed_args.effect,
        effect_intensity=parsed_args.effect_intensity,
        svg_group_by_color=parsed_args.svg_group,
        svg_include_metadata=parsed_args.svg_metadata,
        svg_padding=parsed_args.svg_padding
    )
    merge_tolerance = parsed_args.merge_tolerance if parsed_args.artistic else None

    print(f"Processing: {input_path}")
    print(f"  Colors: {parsed_args.colors}, min region: {parsed_args.min_region}, "
          f"smoothness: {parsed_args.smoothness}")
    if merge_tolerance is not None:
        print(f"  Artistic merge: tolerance {merge_tolerance}")
    if parsed_args.effect != 'none':
        print(f"  Preview effect: {parsed_args.effect} at {parsed_args.effect_intensity:g}")

    try:
        if parsed_args.worker:
            payload = {
                'image': input_path.read_bytes(),
                'num_colors': parsed_args.colors,
                'min_region_size': parsed_args.min_region,
                'smoothness': parsed_args.smoothness,
                'merge_tolerance': merge_tolerance,
                'min_merge_area': parsed_args.min_merge_area,
                'config': config,
            }
            with WorkerHost.from_config(config) as host:
                result = host.process(payload, on_progress=print_progress)
        else:
            pipeline = PaintByNumbersPipeline(
                config=config,
                cache=ProcessingCache(config.result_cache_size, config.result_cache_age)
            )
            result = pipeline.process(
                input_path,
                parsed_args.colors,
                parsed_args.min_region,
                parsed_args.smoothness,
                on_progress=print_progress,
                merge_tolerance=merge_tolerance,
                min_merge_area=parsed_args.min_merge_area
            )
    except (PaintByNumbersError, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    write_outputs(result, output_dir)

    print(f"  Image: {result.width}x{result.height}")
    print(f"  Zones: {len(result.zones)}, contours: {len(result.contour_paths)}")
    if result.artistic_stats is not None:
        stats = result.artistic_stats
        print(f"  Artistic merge: {stats.before_count} -> {stats.after_count} zones")
    for message in result.warnings:
        print(f"  Warning: {message}")
    print(f"Saved outputs to: {output_dir}")

    return 0


if __name__ == '__main__':
    sys.exit(main())
