import asyncio
import logging
from argparse import ArgumentParser

from csvagent.config.csv_agent import load_config
from csvagent.shell import CsvShell
from csvagent.tracer import Tracer, YAMLExporter

logger = logging.getLogger(__name__)


async def run(config_path: str, csv_path: str, verbosity: int | None, request: str | None = None):
    if not verbosity:
        level = logging.WARNING
    elif verbosity == 1:
        level = logging.INFO
        logging.getLogger('httpx').setLevel(logging.WARNING)
        logging.getLogger('openai').setLevel(logging.WARNING)
    else:
        level = logging.DEBUG
    logging.basicConfig(level=level)

    config = load_config(config_path)
    shell = CsvShell.create(config, csv_path)

    token = None
    tracer = None
    if config.trace_dir:
        tracer = Tracer(YAMLExporter(config.trace_dir))
        token = tracer.activate()
    try:
        if request:
            await shell.run_once(request)
        else:
            await shell.run()
    finally:
        if tracer is not None and token is not None:
            tracer.deactivate(token)


def main():
    parser = ArgumentParser('CSV Agent')
    parser.add_argument('--config', required=True, help="Path to the configuration file")
    parser.add_argument('-v', action='count', help="Verbosity level. -v for INFO, -vv for DEBUG")
    parser.add_argument('csv', help="Path to the CSV file to analyze")
    parser.add_argument('request', nargs='?', help="Optional single request to run")
    ns = parser.parse_args()
    asyncio.run(run(ns.config, ns.csv, ns.v, ns.request))


if __name__ == "__main__":
    main()
