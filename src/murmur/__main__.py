import argparse
import asyncio
import os

from murmur.config import RelayConfig, get_env_bool, get_env_int, load_config_from_file
from murmur.logs import get_logger, setup_logging


def build_parser() -> argparse.ArgumentParser:
  parser = argparse.ArgumentParser(prog="murmur-relay")
  parser.add_argument(
    "--port",
    "-p",
    type=int,
    default=get_env_int("PORT", None),
    help="Port to listen on; overrides the configuration file. (Env: PORT)",
  )
  parser.add_argument(
    "--config",
    type=str,
    default=os.getenv("MURMUR_CONFIG"),
    help="Path to a YAML configuration file. Defaults apply without one. (Env: MURMUR_CONFIG)",
  )
  parser.add_argument(
    "--json_logs",
    action="store_true",
    default=get_env_bool("JSON_LOGS", False),
    help="Output logs in JSON format. (Env: JSON_LOGS)",
  )
  parser.add_argument(
    "--correlation_id",
    type=str,
    default=os.getenv("CORRELATION_ID"),
    help="Correlation ID for log tracing. (Env: CORRELATION_ID)",
  )
  return parser


async def run(args: argparse.Namespace, parser: argparse.ArgumentParser) -> None:
  log_level = os.getenv("LOG_LEVEL", "INFO").upper()
  setup_logging(level=log_level, json_output=args.json_logs, correlation_id=args.correlation_id)
  logger = get_logger("main")

  try:
    config = load_config_from_file(args.config) if args.config else RelayConfig()
  except ValueError as e:
    logger.error("Configuration validation failed", error=str(e), config_path=args.config)
    raise

  if args.port is not None:
    config.server.port = args.port

  if not config.upstream.api_key:
    parser.error("No upstream API key. Set OPENAI_API_KEY or upstream.api_key in the config file.")

  logger.info("Starting Murmur relay", port=config.server.port, config_path=args.config)

  from murmur.collab import TranscriptHub
  from murmur.server import RelayServer

  hub = TranscriptHub.create() if config.collab.enabled else None
  await RelayServer(config, hub=hub).run()


def main() -> None:
  parser = build_parser()
  args = parser.parse_args()
  try:
    asyncio.run(run(args, parser))
  except KeyboardInterrupt:
    pass


if __name__ == "__main__":
  main()
