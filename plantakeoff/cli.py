"""
Command-line interface for PlanTakeoff.
Provides CLI commands for tile planning and tiled plan analysis.
"""

import asyncio
import sys
import time

import click
from loguru import logger

from .config import load_config
from .core.errors import InvalidConfiguration
from .core.tile_grid import TileGridPlanner


def configure_logging(verbose: bool):
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO")


async def run_analysis(pipeline, image, texts=()):
    """Analyze one plan, closing the pipeline's inference client even when the run fails."""
    try:
        return await pipeline.analyze(image, texts=texts)
    finally:
        await pipeline.client.close()


@click.group()
@click.option('--config', default='config.yaml', help='Configuration file path')
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
@click.pass_context
def cli(ctx, config, verbose):
    """PlanTakeoff CLI - tiled analysis of scanned construction plans."""
    configure_logging(verbose)
    ctx.ensure_object(dict)
    try:
        ctx.obj['config'] = load_config(config)
    except InvalidConfiguration as e:
        click.echo(f"❌ Invalid configuration: {e}")
        sys.exit(2)


@cli.command()
@click.argument('width', type=int)
@click.argument('height', type=int)
@click.option('--tile-size', type=int, help='Tile size in pixels')
@click.option('--overlap', type=int, help='Tile overlap in pixels')
@click.option('--list-tiles', is_flag=True, help='Print every tile')
@click.pass_context
def grid(ctx, width, height, tile_size, overlap, list_tiles):
    """Show the tile grid for an image of WIDTH x HEIGHT pixels."""
    tiling = ctx.obj['config'].tiling

    try:
        planner = TileGridPlanner(tile_size or tiling.tile_size, overlap or tiling.overlap)
        tile_grid = planner.plan(width, height)
    except InvalidConfiguration as e:
        click.echo(f"❌ Invalid tiling: {e}")
        sys.exit(2)

    click.echo(f"🧩 Tile grid for {width}x{height}")
    click.echo(f"   - Tile size: {tile_grid.tile_size} (overlap {tile_grid.overlap}, step {tile_grid.step})")
    click.echo(f"   - Grid: {tile_grid.tiles_x}x{tile_grid.tiles_y}")
    click.echo(f"   - Tiles: {len(tile_grid)}")

    if list_tiles:
        for tile in tile_grid:
            click.echo(f"   {tile.tile_id:4d}: ({tile.x},{tile.y}) {tile.width}x{tile.height} "
                       f"overlaps {list(tile.overlaps)}")


@cli.command()
@click.argument('image_path', type=click.Path(exists=True))
@click.option('--dpi', type=float, help='Scan resolution, overrides file metadata')
@click.option('--text', 'texts', multiple=True, help='Sheet text for scale detection, e.g. "M 1:100"')
@click.option('--host', help='Ollama host')
@click.option('--model', help='Vision model name')
@click.option('--max-concurrent', type=int, help='Tiles analyzed in parallel')
@click.option('--output', '-o', help='Write JSON report to this path')
@click.option('--overlay', help='Write annotated plan image to this path')
@click.pass_context
def analyze(ctx, image_path, dpi, texts, host, model, max_concurrent, output, overlay):
    """Run tiled analysis on a rasterized plan."""
    from .core.image_loader import load_plan_image
    from .core.pipeline import PlanAnalysisPipeline
    from .export.overlay import save_overlay
    from .export.report import write_report
    from .inference.ollama import OllamaVisionClient

    config = ctx.obj['config']
    if host:
        config.inference.host = host
    if model:
        config.inference.model = model
    if max_concurrent:
        config.dispatch.max_concurrent_tiles = max_concurrent

    start_time = time.time()

    try:
        config.validate()
        image = load_plan_image(image_path, dpi=dpi, default_dpi=config.default_dpi)
        client = OllamaVisionClient(
            host=config.inference.host,
            model=config.inference.model,
            request_timeout=config.http_timeout,
            temperature=config.inference.temperature,
        )
        pipeline = PlanAnalysisPipeline(config, client)
        result = asyncio.run(run_analysis(pipeline, image, texts))

        if output:
            write_report(result, output)
        if overlay:
            save_overlay(overlay, image.pixels, result.elements, result.grid)

    except InvalidConfiguration as e:
        click.echo(f"❌ Invalid configuration: {e}")
        sys.exit(2)
    except Exception as e:
        logger.error(f"Analysis failed: {e}")
        click.echo(f"❌ Analysis failed: {e}")
        sys.exit(1)

    summary = result.summary()
    click.echo("✅ Plan analyzed successfully!")
    click.echo(f"   - Tiles: {summary['total_tiles']} ({summary['failed_tiles']} failed)")
    click.echo(f"   - Detections: {summary['raw_detections']} -> {summary['merged_elements']} merged")
    click.echo(f"   - Valid elements: {summary['valid_elements']} ({summary['discarded_elements']} discarded)")
    click.echo(f"   - Violations: {summary['violations']} ({summary['critical_violations']} critical)")
    click.echo(f"   - Scale: {summary['scale_pixels_per_mm']:.4f} px/mm "
               f"(confidence {summary['scale_confidence']:.2f})")

    for element_type, count in summary['counts'].items():
        click.echo(f"   - {element_type}: {count} pcs")
    for element_type, units in result.measurement.totals().items():
        for unit, value in units.items():
            click.echo(f"   - {element_type}: {value:.2f} {unit}")

    click.echo(f"   - Processing time: {time.time() - start_time:.2f}s")


if __name__ == '__main__':
    cli()
