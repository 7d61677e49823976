"""
GDB Flash Loader CLI

Command-line interface for transferring images to external flash through a
GDB-compatible debugger.
"""

import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import BarColumn, Progress, TextColumn, TimeRemainingColumn
from rich.table import Table

from gdb_flash_loader.checksum import DEFAULT_ALGORITHM, checksum as compute_checksum, list_checksum_algorithms
from gdb_flash_loader.chunks import read_image, split
from gdb_flash_loader.config import (
    DEFAULT_ENDPOINT,
    DEFAULT_GDB,
    TargetParameters,
    TransferConfig,
)
from gdb_flash_loader.core.messages import MessageItem, MessageLevel, failure_from_exception, result_to_messages
from gdb_flash_loader.core.parsing import parse_int as _parse_int_core, parse_size as _parse_size_core
from gdb_flash_loader.errors import ConfigurationError, FlashLoaderError
from gdb_flash_loader.transfer import ProgressEvent, TransferSession, TransferStatus, upload_file

logger = logging.getLogger("gdb_flash_loader")

# Setup Rich console
console = Console()
# Log records go to stderr so --json output stays parseable
err_console = Console(stderr=True)

app = typer.Typer(help="GDB Flash Loader - write images to external flash through a debugger")

EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def setup_logging(verbose: bool = False) -> None:
    """Route log records through Rich; DEBUG shows debugger traffic."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, rich_tracebacks=True, show_path=verbose)],
        force=True,
    )


def print_header(text: str) -> None:
    """Print fancy header."""
    console.print(Panel(text, expand=False, style="bold blue"))


def print_success(text: str) -> None:
    """Print success message."""
    console.print(f"✓ {text}", style="green")


def print_warning(text: str) -> None:
    """Print warning message."""
    console.print(f"⚠️  {text}", style="yellow")


def print_error(text: str) -> None:
    """Print error message."""
    console.print(f"❌ {text}", style="red")


def print_json(data) -> None:
    """Print JSON without markup or line wrapping."""
    console.print(json.dumps(data, indent=2), markup=False, highlight=False, soft_wrap=True)


def print_message(item: MessageItem, verbose: bool = False) -> None:
    """Print a structured message with its remediation hint."""
    if item.level == MessageLevel.ERROR:
        style = "red"
        icon = "❌"
    elif item.level == MessageLevel.WARN:
        style = "yellow"
        icon = "⚠️"
    else:
        style = "blue"
        icon = "ℹ️"

    console.print(f"{icon} [{item.code.value}] {item.title}", style=style, markup=False)
    if verbose and item.detail:
        console.print(f"   {item.detail}", style="dim", markup=False)
    if item.remediation:
        console.print(f"   → {item.remediation}", style="cyan")


def parse_int(value: Optional[str], label: str) -> Optional[int]:
    """
    Parse an address/offset option (decimal, 0x hex, h suffix).

    CLI wrapper around core.parsing.parse_int that converts ValueError to
    typer.BadParameter for proper CLI error handling.
    """
    try:
        return _parse_int_core(value)
    except ValueError as e:
        raise typer.BadParameter(f"Invalid {label}: {e}")


def parse_size(value: Optional[str], label: str) -> Optional[int]:
    """Parse a size option ("65536", "0x10000", "64K")."""
    try:
        return _parse_size_core(value)
    except ValueError as e:
        raise typer.BadParameter(f"Invalid {label}: {e}")


def build_config(
    binary: Path,
    config_file: Optional[Path] = None,
    **options,
) -> TransferConfig:
    """
    Merge a JSON config file (if any) with command-line options.

    Options that are None leave the file's value untouched. Without a
    config file the target options are required.

    Raises:
        ConfigurationError: If required values are missing or invalid
    """
    if config_file is not None:
        base = TransferConfig.from_json_file(config_file)
        return base.with_overrides(binary_path=binary, **options)

    missing = [
        name for name in ("executable_path", "ram_buffer_address", "ram_buffer_size", "copy_function")
        if options.get(name) is None
    ]
    if missing:
        raise ConfigurationError(
            "Missing required options (or use --config): " + ", ".join(missing)
        )

    target = TargetParameters(
        ram_buffer_address=options.pop("ram_buffer_address"),
        ram_buffer_size=options["ram_buffer_size"],
        flash_base=options.pop("flash_base", None) or 0,
        copy_function=options.pop("copy_function"),
        chunk_size=options.pop("chunk_size", None) or options["ram_buffer_size"],
    )
    options.pop("ram_buffer_size")
    base = TransferConfig(
        binary_path=binary,
        executable_path=options.pop("executable_path"),
        target=target,
    )
    return base.with_overrides(**options)


async def _run_upload(config: TransferConfig, progress: Optional[Progress]) -> TransferSession:
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
    except (NotImplementedError, RuntimeError):
        pass

    task_id = None
    if progress is not None:
        image_size = config.binary_path.stat().st_size if config.binary_path.is_file() else 0
        task_id = progress.add_task("Uploading", total=max(image_size, 1))

    def on_progress(event: ProgressEvent) -> None:
        if progress is not None:
            progress.update(
                task_id,
                advance=event.length,
                description=f"Chunk {event.chunk_index + 1}/{event.chunks_total}",
            )

    try:
        return await upload_file(config, progress_cb=on_progress, cancel_event=cancel_event)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass


@app.command()
def upload(
    binary: Path = typer.Argument(..., help="Binary image to write to external flash"),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="JSON config file with target parameters"),
    gdb: Optional[str] = typer.Option(None, "--gdb", help=f"Debugger executable (default {DEFAULT_GDB})"),
    elf: Optional[Path] = typer.Option(None, "--elf", "-e", help="Target ELF with symbols"),
    endpoint: Optional[str] = typer.Option(None, "--endpoint", help=f"GDB server host:port (default {DEFAULT_ENDPOINT})"),
    ram_addr: Optional[str] = typer.Option(None, "--ram-addr", help="RAM staging buffer address (e.g. 0x20010000)"),
    ram_size: Optional[str] = typer.Option(None, "--ram-size", help="RAM staging buffer size (e.g. 64K)"),
    flash_base: Optional[str] = typer.Option(None, "--flash-base", help="Flash offset of the image (default 0)"),
    function: Optional[str] = typer.Option(None, "--function", "-f", help="Target copy-to-flash function symbol"),
    chunk_size: Optional[str] = typer.Option(None, "--chunk-size", help="Bytes per chunk (default: RAM buffer size)"),
    attempts: Optional[int] = typer.Option(None, "--attempts", help="Attempts per chunk before giving up"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Debugger response timeout (seconds)"),
    call_timeout: Optional[float] = typer.Option(None, "--call-timeout", help="Copy routine timeout (seconds)"),
    session_timeout: Optional[float] = typer.Option(None, "--session-timeout", help="Whole transfer timeout (seconds)"),
    checksum_algorithm: Optional[str] = typer.Option(None, "--checksum", help="Checksum algorithm (sum32, crc32)"),
    prepare_breakpoint: Optional[str] = typer.Option(
        None, "--prepare-breakpoint", help="Reset target and run to this symbol before transfer"
    ),
    readback: Optional[bool] = typer.Option(None, "--readback/--no-readback", help="Read each chunk back from RAM before copying"),
    work_dir: Optional[Path] = typer.Option(None, "--work-dir", help="Directory for staged chunk files"),
    output_json: bool = typer.Option(False, "--json", "-j", help="Output result as JSON for scripting"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log debugger traffic"),
) -> None:
    """
    Upload a binary image to external flash through the debugger.

    Steps:
    1. Start the debugger and connect to the GDB server
    2. For each chunk: restore into RAM, call the copy routine, verify checksum
    3. Disconnect and quit the debugger
    """
    setup_logging(verbose)
    if not output_json:
        print_header("Upload to External Flash")

    try:
        config = build_config(
            binary,
            config_file,
            gdb_path=gdb,
            executable_path=elf,
            endpoint=endpoint,
            ram_buffer_address=parse_int(ram_addr, "RAM address"),
            ram_buffer_size=parse_size(ram_size, "RAM size"),
            flash_base=parse_int(flash_base, "flash base"),
            copy_function=function,
            chunk_size=parse_size(chunk_size, "chunk size"),
            max_attempts=attempts,
            response_timeout=timeout,
            call_timeout=call_timeout,
            session_timeout=session_timeout,
            checksum_algorithm=checksum_algorithm,
            prepare_breakpoint=prepare_breakpoint,
            verify_readback=readback,
            work_dir=work_dir,
        )
        config.validate()
    except FlashLoaderError as e:
        print_message(failure_from_exception(e), verbose=verbose)
        raise typer.Exit(EXIT_FAILURE)

    if not output_json:
        target = config.target
        console.print(f"Image: {config.binary_path}")
        console.print(f"Debugger: {config.gdb_path} → {config.endpoint}")
        console.print(f"RAM buffer: 0x{target.ram_buffer_address:08X} ({target.ram_buffer_size:,} bytes)")
        console.print(f"Flash base: 0x{target.flash_base:08X}")
        console.print(f"Copy routine: {target.copy_function}, chunk size {target.chunk_size:,} bytes")

    try:
        if output_json:
            session = asyncio.run(_run_upload(config, None))
        else:
            with Progress(
                TextColumn("[{task.description}]"),
                BarColumn(),
                TextColumn("[{task.percentage:.0f}%]"),
                TimeRemainingColumn(),
                console=console,
            ) as progress:
                session = asyncio.run(_run_upload(config, progress))
    except KeyboardInterrupt:
        print_warning("Upload cancelled; debugger was shut down")
        raise typer.Exit(EXIT_INTERRUPTED)
    except FlashLoaderError as e:
        if output_json:
            print_json({"ok": False, "error": str(e)})
        else:
            print_message(failure_from_exception(e), verbose=verbose)
        raise typer.Exit(EXIT_FAILURE)

    result = session.to_result()
    if output_json:
        print_json(result.to_dict())
    else:
        console.print(result.to_summary(), markup=False)
        if session.status == TransferStatus.COMPLETED:
            print_success(f"Uploaded {session.bytes_total:,} bytes in {session.chunks_total} chunk(s)")
        else:
            for item in result_to_messages(result):
                if item.level == MessageLevel.ERROR:
                    print_message(item, verbose=verbose)

    if not session.ok:
        cancelled = result.metadata.get("failure_code") == "E_CANCELLED"
        raise typer.Exit(EXIT_INTERRUPTED if cancelled else EXIT_FAILURE)


@app.command()
def plan(
    binary: Path = typer.Argument(..., help="Binary image"),
    chunk_size: str = typer.Option(..., "--chunk-size", help="Bytes per chunk (e.g. 64K)"),
    flash_base: str = typer.Option("0", "--flash-base", help="Flash offset of the image"),
    ram_size: Optional[str] = typer.Option(None, "--ram-size", help="RAM buffer size to validate the chunk size against"),
    algorithm: str = typer.Option(DEFAULT_ALGORITHM, "--checksum", help="Checksum algorithm"),
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """Show how an image would be chunked, without touching the debugger."""
    size = parse_size(chunk_size, "chunk size")
    base = parse_int(flash_base, "flash base") or 0
    limit = parse_size(ram_size, "RAM size")

    try:
        if limit is not None and size > limit:
            raise ConfigurationError(f"Chunk size {size} exceeds RAM buffer size {limit}")
        image = read_image(binary)
        chunks = split(image, size)
        rows = [
            {
                "index": chunk.index,
                "offset": chunk.offset,
                "flash_address": base + chunk.offset,
                "length": chunk.length,
                "checksum": compute_checksum(chunk.data, algorithm),
                "is_last": chunk.is_last,
            }
            for chunk in chunks
        ]
    except FlashLoaderError as e:
        print_message(failure_from_exception(e))
        raise typer.Exit(EXIT_FAILURE)

    if output_json:
        print_json(rows)
        return

    table = Table(title=f"{binary.name}: {len(image):,} bytes, {len(rows)} chunk(s)")
    table.add_column("#", justify="right")
    table.add_column("Offset", style="cyan")
    table.add_column("Flash", style="cyan")
    table.add_column("Length", justify="right")
    table.add_column(f"Checksum ({algorithm})", style="green")
    for row in rows:
        table.add_row(
            str(row["index"]),
            f"0x{row['offset']:08X}",
            f"0x{row['flash_address']:08X}",
            f"{row['length']:,}",
            f"0x{row['checksum']:08X}",
        )
    console.print(table)


@app.command("checksum")
def checksum_cmd(
    file: Path = typer.Argument(..., help="File to checksum"),
    offset: str = typer.Option("0", "--offset", "-o", help="Start offset"),
    length: Optional[str] = typer.Option(None, "--length", "-l", help="Byte count (default: to end of file)"),
    algorithm: str = typer.Option(DEFAULT_ALGORITHM, "--algorithm", "-a", help="Checksum algorithm"),
) -> None:
    """Compute the host checksum of a file region, as the target would report it."""
    start = parse_int(offset, "offset") or 0
    count = parse_size(length, "length")
    if algorithm.lower() not in list_checksum_algorithms():
        print_error(f"Unknown algorithm '{algorithm}'. Valid: {', '.join(list_checksum_algorithms())}")
        raise typer.Exit(EXIT_FAILURE)

    try:
        data = read_image(file)
    except FlashLoaderError as e:
        print_error(str(e))
        raise typer.Exit(EXIT_FAILURE)

    region = data[start:] if count is None else data[start:start + count]
    value = compute_checksum(region, algorithm)
    console.print(f"{algorithm}: 0x{value:08X} ({value}) over {len(region):,} bytes at offset 0x{start:X}")


@app.command("show-config")
def show_config(
    config_file: Path = typer.Argument(..., help="JSON config file"),
) -> None:
    """Validate a config file and print the effective settings."""
    try:
        config = TransferConfig.from_json_file(config_file)
        config.validate()
    except FlashLoaderError as e:
        print_message(failure_from_exception(e))
        raise typer.Exit(EXIT_FAILURE)

    print_json(config.to_dict())
    print_success("Config is valid")


def main() -> None:
    """Main entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        console.print(f"\n[red bold]Fatal error:[/red bold] {e}")
        sys.exit(EXIT_FAILURE)


if __name__ == "__main__":
    main()
