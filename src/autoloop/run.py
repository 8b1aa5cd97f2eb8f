# run.py
# Entry point. Config and wiring only, no logic lives here.
#
# Swap the model string for any OpenAI-compatible model id, e.g. from
# https://openrouter.ai/models, or point AUTOLOOP_BASE_URL at a local server.

import argparse
import asyncio
import logging
import signal
import sys

from autoloop import display
from autoloop.config import AgentConfig
from autoloop.errors import TransportUnavailableError
from autoloop.harness import Scaffold
from autoloop.models import AgentResult
from autoloop.runtime import RunHandle
from autoloop.tools import build_default_registry
from autoloop.transport import OpenAITransport

logger = logging.getLogger(__name__)

# Demo prompts, used when no prompt is given on the command line.
PROMPTS = [
    "List the files in the current directory and tell me which ones look like Python sources.",
    "Search for the latest Python packaging best practices and save a short summary "
    "to notes/packaging_notes.txt.",
]


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="autoloop", description="Run the autonomous agent loop.")
    parser.add_argument("prompt", nargs="*", help="Request for the agent. Runs the demo prompts if omitted.")
    parser.add_argument("--model", help="Model id (default: AUTOLOOP_MODEL or the built-in default).")
    parser.add_argument("--base-url", help="OpenAI-compatible API base URL.")
    parser.add_argument("--system", help="System prompt to prepend.")
    parser.add_argument("--max-steps", type=int, dest="step_budget", help="Step budget for the run.")
    parser.add_argument("--no-planning", action="store_true", help="Skip the planning call.")
    parser.add_argument("--no-verification", action="store_true", help="Skip completion verification.")
    parser.add_argument("--no-stream", action="store_true", help="Always use blocking model calls.")
    parser.add_argument(
        "--stream-tools",
        action="store_true",
        help="Declare that the server can stream tool-call arguments.",
    )
    parser.add_argument("--log-level", default="WARNING", help="Python logging level.")
    return parser


async def _run(scaffold: Scaffold, prompt: str, system: str | None, handle: RunHandle) -> AgentResult:
    """Run one prompt with Ctrl-C wired to a cooperative stop of the run."""
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, handle.stop)
    try:
        return await scaffold.run(prompt, system_prompt=system, handle=handle)
    finally:
        loop.remove_signal_handler(signal.SIGINT)


def main(argv: list[str] | None = None) -> int:
    args = _parser().parse_args(argv)
    display.configure_logging(args.log_level)

    overrides = {"model": args.model, "step_budget": args.step_budget}
    if args.no_planning:
        overrides["enable_planning"] = False
    if args.no_verification:
        overrides["enable_verification"] = False
    if args.no_stream:
        overrides["enable_streaming"] = False
    config = AgentConfig.from_env(**overrides)

    registry = build_default_registry()
    transport = OpenAITransport(base_url=args.base_url, supports_streaming_with_tools=args.stream_tools)
    scaffold = Scaffold(
        transport,
        registry,
        config,
        on_progress=display.progress,
        on_content=display.stream_content,
    )
    display.banner(config.model, registry.descriptors(), config.step_budget)

    prompts = [" ".join(args.prompt)] if args.prompt else PROMPTS
    for prompt in prompts:
        display.prompt_received(prompt)
        handle = RunHandle()
        try:
            result = asyncio.run(_run(scaffold, prompt, args.system, handle))
        except TransportUnavailableError as exc:
            display.halt(str(exc))
            return 1
        display.final_result(result)
        if result.stopped:
            return 130

    return 0


if __name__ == "__main__":
    sys.exit(main())
