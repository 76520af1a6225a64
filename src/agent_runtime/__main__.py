import asyncio
import sys

from dotenv import load_dotenv
from loguru import logger

from agent_runtime.agent import run_session
from agent_runtime.app_config import load_json_config, parse_app_config, resolve_runtime_env
from agent_runtime.bootstrap import bootstrap_runtime
from agent_runtime.errors import ConfigError


async def main() -> int:
    load_dotenv()

    try:
        app = parse_app_config(load_json_config())
    except ConfigError as ex:
        logger.error(str(ex))
        return 1

    env = resolve_runtime_env(app.provider_name)
    if not env.provider_api_key:
        logger.error(f"{env.provider_env_var} environment variable is required.")
        return 1

    runtime = bootstrap_runtime(app, env)
    shutdown = runtime.deps.shutdown

    print(f"agent-runtime ({runtime.config.role}, {runtime.config.model})")
    print(f"Workspace: {runtime.config.workspace_root}")
    if runtime.log_descriptions:
        print(f"Logging: {', '.join(runtime.log_descriptions)}")
    print()

    shutdown.register()
    try:
        result = await run_session(runtime.config, runtime.deps)
    finally:
        shutdown.unregister()

    print(f"Session {result.session_id}: {result.stop_reason} after {result.iterations} iteration(s)")
    print(f"Tokens: {result.tokens_used.total:,} (in: {result.tokens_used.input:,}, out: {result.tokens_used.output:,})")
    if result.error:
        print(f"Error: {result.error}")
    return 0 if result.success else 1


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
