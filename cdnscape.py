import argparse
import logging
import os
import signal
import sys
import threading

from asn_middleware import RIPESTAT_DELAY, SOURCES, FetchError, RangeTableBuilder, ensure_writable
from input_middleware import ConfigError, count_domain_rows, iter_domain_jobs, read_asn_records, read_cdn_names
from log_middleware import default_log_path, setup_logging
from output_middleware import AttributionSink, SinkError, write_range_table
from pipeline_middleware import DEFAULT_WORKERS, PipelineCoordinator
from progress_middleware import ProgressMiddleware
from range_middleware import RangeTable
from resolver_middleware import DNS_TIMEOUT, ResolverPool, load_resolvers
from selection_middleware import select_domains

log = logging.getLogger("cdnscape")

EXIT_OK = 0
EXIT_SETUP = 1
EXIT_INTERRUPTED = 130


def _install_cancel_handler(cancel_event: threading.Event):
    """First Ctrl+C drains in-flight work; a second one aborts. Returns the previous handler."""
    def _handler(signum, frame):
        if cancel_event.is_set():
            signal.signal(signal.SIGINT, signal.default_int_handler)
            raise KeyboardInterrupt
        log.warning("Interrupt received; finishing in-flight domains (Ctrl+C again to abort)")
        cancel_event.set()

    try:
        return signal.signal(signal.SIGINT, _handler)
    except ValueError:
        # not on the main thread (embedded use); keep default behaviour
        return None


def _workers(value: str) -> int:
    if str(value).lower() == "auto":
        return min(64, (os.cpu_count() or 4) * 8)
    try:
        n = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError("must be an integer or 'auto'")
    if n < 1:
        raise argparse.ArgumentTypeError("must be >= 1")
    return n


def cmd_build_map(args) -> int:
    # refuse before any download or API call
    ensure_writable(args.output, args.force)
    records = read_asn_records(args.input)
    log.info("Read %d CDNs from %s", len(records), args.input)

    if args.source == "ip2asn":
        source = SOURCES["ip2asn"](cache_path=args.ip2asn_cache)
    else:
        source = SOURCES["ripestat"](delay=args.delay)

    table = RangeTableBuilder(source, progress=not args.quiet).build(records)
    write_range_table(table, args.output, overwrite=args.force)
    return EXIT_OK


def cmd_resolve(args, cancel_event: threading.Event) -> int:
    table = RangeTable.load(args.cdn_map)
    total = count_domain_rows(args.input)
    log.info("Total domains to process: %d", total)

    pool = ResolverPool(load_resolvers(args.resolvers_file), timeout=args.dns_timeout,
                        cancel_event=cancel_event)
    log.info("Using %d resolvers, %d workers, %.1fs per attempt", len(pool), args.threads, pool.timeout)

    progress = ProgressMiddleware(total=total, desc="Resolving", unit="domain",
                                  disable=args.quiet, every=args.report_every, window=args.eta_window)
    with AttributionSink(args.output) as sink:
        coordinator = PipelineCoordinator(
            table, pool, sink,
            workers=args.threads,
            progress=progress,
            cancel_event=cancel_event,
            max_sink_errors=args.max_sink_errors,
        )
        summary = coordinator.run(iter_domain_jobs(args.input, sld=args.sld), total=total)

    log.info("Summary: %s", summary.as_line())
    if cancel_event.is_set():
        log.warning("Run cancelled: %d domains not dispatched; partial results kept in %s",
                    summary.undispatched, args.output)
        return EXIT_INTERRUPTED
    log.info("Processing complete! CSV data has been written to %s", args.output)
    return EXIT_OK


def cmd_select(args) -> int:
    names = read_cdn_names(args.cdn_list)
    written = select_domains(names, args.input, args.out_dir, count=args.count, seed=args.seed)
    log.info("Selected domains for %d of %d CDNs", sum(1 for n in written.values() if n), len(written))
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cdnscape",
        description="cdnscape: attribute domains to CDNs from public ASN and DNS data",
        epilog="""Examples:
  cdnscape build-map --input cdn_asn.csv --output cdn_asn_to_ip_map.json
  cdnscape resolve --input top-1m.csv --cdn-map cdn_asn_to_ip_map.json --threads 50
  cdnscape select --cdn-list cdn_asn.csv --input domains_to_cdn.csv --count 100
""",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument("--logfile", default=None, help="Log file path (resolve defaults to scape_<timestamp>.log)")
    parser.add_argument("--no-logfile", action="store_true", help="Do not write a log file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging (per-resolver attempts)")
    parser.add_argument("--quiet", action="store_true", help="Disable progress bar and info output on the console")
    parser.add_argument("--color", action="store_true", help="Colored console log levels")

    sub = parser.add_subparsers(dest="command", required=True)

    b = sub.add_parser("build-map", help="Build the CDN -> IP range table from a CDN/ASN list")
    b.add_argument("--input", default="cdn_asn.csv", help="CDN/ASN CSV (header: cdn_name,...)")
    b.add_argument("--output", default="cdn_asn_to_ip_map.json", help="Range table JSON to create")
    b.add_argument("--force", action="store_true", help="Overwrite an existing output file")
    b.add_argument("--source", choices=sorted(SOURCES), default="ip2asn",
                   help="'ip2asn' = bulk iptoasn.com table (cached on disk), 'ripestat' = per-ASN API")
    b.add_argument("--ip2asn-cache", default="ip2asn-v4.tsv", help="Local path of the ip2asn TSV cache")
    b.add_argument("--delay", type=float, default=RIPESTAT_DELAY,
                   help="Seconds between per-ASN API requests (ripestat only, default: %(default)s)")

    r = sub.add_parser("resolve", help="Resolve domains and attribute them to CDNs")
    r.add_argument("--input", default="top-1m.csv", help="Domain list (rank,domain rows, no header)")
    r.add_argument("--cdn-map", default="cdn_asn_to_ip_map.json", help="Range table JSON")
    r.add_argument("--output", default="domains_to_cdn.csv", help="Attribution CSV to create")
    r.add_argument("--threads", type=_workers, default=DEFAULT_WORKERS,
                   help=f"Concurrent resolution workers (default: {DEFAULT_WORKERS}, or 'auto')")
    r.add_argument("--dns-timeout", type=float, default=DNS_TIMEOUT, help="Seconds per resolver attempt")
    r.add_argument("--resolvers-file", default=None,
                   help="YAML list of public resolvers (default: ./resolvers.yaml, else built-in list)")
    r.add_argument("--sld", action="store_true", help="Reduce each input domain to its registrable domain")
    r.add_argument("--report-every", type=int, default=10, help="Log progress/ETA every N domains")
    r.add_argument("--eta-window", type=int, default=None,
                   help="Average the last N durations for the ETA (default: all)")
    r.add_argument("--max-sink-errors", type=int, default=None,
                   help="Abort after this many failed output writes (default: never)")

    s = sub.add_parser("select", help="Sample up to N attributed domains per CDN")
    s.add_argument("--cdn-list", default="cdn_asn.csv", help="CDN/ASN CSV naming the CDNs")
    s.add_argument("--input", default="domains_to_cdn.csv", help="Attribution CSV from 'resolve'")
    s.add_argument("--out-dir", default="domain_cdn_sub_selection", help="Directory for the selection files")
    s.add_argument("--count", type=int, default=100, help="Max domains per CDN (default: 100)")
    s.add_argument("--seed", type=int, default=None, help="Random seed for reproducible selections")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    log_file = args.logfile
    if log_file is None and args.command == "resolve" and not args.no_logfile:
        log_file = default_log_path("scape")
    try:
        setup_logging(None if args.no_logfile else log_file, verbose=args.verbose,
                      color=args.color, quiet=args.quiet)
    except OSError as e:
        print(f"Error creating log file: {e}", file=sys.stderr)
        return EXIT_SETUP

    cancel_event = threading.Event()
    previous = _install_cancel_handler(cancel_event)
    try:
        if args.command == "build-map":
            return cmd_build_map(args)
        if args.command == "resolve":
            return cmd_resolve(args, cancel_event)
        return cmd_select(args)
    except (ConfigError, FetchError, SinkError) as e:
        log.error("%s", e)
        return EXIT_SETUP
    except OSError as e:
        log.error("I/O error: %s", e)
        return EXIT_SETUP
    except KeyboardInterrupt:
        log.error("Interrupted by user.")
        return EXIT_INTERRUPTED
    finally:
        if previous is not None:
            signal.signal(signal.SIGINT, previous)


if __name__ == "__main__":
    sys.exit(main())
