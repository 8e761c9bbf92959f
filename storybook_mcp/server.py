#!/usr/bin/env python3
"""
MCP server exposing a single tool, ``generate_storybook_image``, over stdio.

The tool writes a short children's story and a matching illustration with
Gemini, saves both plus an HTML preview, and tries to open the preview.
"""

import sys
import argparse
import logging
from typing import Annotated, Any, Dict, Optional

from dotenv import find_dotenv, load_dotenv
from pydantic import Field
from mcp.server.fastmcp import Context, FastMCP
from mcp import types
from mcp.shared.exceptions import McpError
from mcp.types import INTERNAL_ERROR, ErrorData

from .storybook import (
    ART_STYLES,
    DEFAULT_ART_STYLE,
    ConfigurationError,
    Settings,
    StepCallback,
    StorybookError,
    StorybookGenerator,
    StorybookResult,
    parse_invocation,
)

logger = logging.getLogger(__name__)

SERVER_NAME = "mcp-storybook-image-generator"
TOOL_NAME = "generate_storybook_image"
TOOL_DESCRIPTION = "Generates a 3D style cartoon image with a children's story based on the given prompt"


def _context_step(ctx: Optional[Context]) -> Optional[StepCallback]:
    if ctx is None:
        return None

    async def step(message: str) -> None:
        try:
            await ctx.info(message)
        except Exception as e:
            # Progress notes are optional; no request context means nobody listens
            logger.debug("Could not send progress note: %s", e)

    return step


async def handle_generate_storybook_image(generator: StorybookGenerator, prompt: Optional[str],
                                          fileName: Optional[str], artStyle: Optional[str] = DEFAULT_ART_STYLE,
                                          ctx: Optional[Context] = None) -> StorybookResult:
    """
    Tool boundary: every failure leaves here as an McpError carrying a
    JSON-RPC code and the original message.
    """
    arguments: Dict[str, Any] = {"prompt": prompt, "fileName": fileName, "artStyle": artStyle}
    try:
        invocation = parse_invocation(arguments)
        return await generator.run(invocation, on_step=_context_step(ctx))
    except StorybookError as e:
        logger.error("Error processing %s: %s", TOOL_NAME, e)
        raise McpError(ErrorData(code=e.code, message=str(e))) from e
    except Exception as e:
        logger.error("Error processing %s: %s", TOOL_NAME, e, exc_info=True)
        raise McpError(ErrorData(code=INTERNAL_ERROR,
                                 message=f"Error processing request: {e}")) from e


def create_server(settings: Settings, generator: Optional[StorybookGenerator] = None) -> FastMCP:
    generator = generator or StorybookGenerator(settings)
    mcp = FastMCP(
        SERVER_NAME,
        instructions="Create children's storybook illustrations with a matching short story.",
        log_level="DEBUG" if settings.debug else "INFO",
    )

    @mcp.tool(name=TOOL_NAME, description=TOOL_DESCRIPTION)
    async def generate_storybook_image(
        prompt: Annotated[str, Field(description="The prompt describing the storybook scene to generate")],
        fileName: Annotated[str, Field(description="Base name for the output files (without extension)")],
        ctx: Context,
        artStyle: Annotated[str, Field(
            description="The art style for the image (default: '3d cartoon')",
            json_schema_extra={"enum": list(ART_STYLES)},
        )] = DEFAULT_ART_STYLE,
    ) -> StorybookResult:
        return await handle_generate_storybook_image(generator, prompt, fileName, artStyle, ctx)

    async def call_tool(req: types.CallToolRequest) -> types.ServerResult:
        # McpError propagates so the client gets a JSON-RPC error with its code
        if req.params.name != TOOL_NAME:
            raise McpError(ErrorData(code=INTERNAL_ERROR, message=f"Unknown tool: {req.params.name}"))
        arguments = req.params.arguments or {}
        result = await handle_generate_storybook_image(
            generator,
            arguments.get("prompt"),
            arguments.get("fileName"),
            arguments.get("artStyle"),
            mcp.get_context(),
        )
        return types.ServerResult(types.CallToolResult(
            content=[types.TextContent(type="text", text=result.summary)],
            structuredContent=result.model_dump(mode="json"),
            isError=False,
        ))

    mcp._mcp_server.request_handlers[types.CallToolRequest] = call_tool
    return mcp

# ------------------ CLI -------------------------


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog=SERVER_NAME,
        description="MCP Storybook Image Generator",
    )
    parser.add_argument("--api-key", help="Set the Gemini API key")
    # None means "not passed", so the environment still applies
    parser.add_argument("--save-to-desktop", action=argparse.BooleanOptionalAction, default=None,
                        help="Save generated files to desktop")
    parser.add_argument("--debug", action=argparse.BooleanOptionalAction, default=None,
                        help="Enable debug logging")
    return parser.parse_args(argv)


def configure_logging(debug: bool) -> None:
    # stdout carries the protocol, so logs go to stderr
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def main(argv=None) -> None:
    """Console entry point: parse flags, build settings, serve over stdio."""
    args = parse_args(argv)
    # .env is looked up from where the host launched us
    load_dotenv(find_dotenv(usecwd=True))

    try:
        settings = Settings.from_env(
            api_key=args.api_key,
            save_to_desktop=args.save_to_desktop,
            debug=args.debug,
        )
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    configure_logging(settings.debug)
    server = create_server(settings)
    logger.debug("MCP Storybook Image Generator Server running (save_to_desktop=%s)",
                 settings.save_to_desktop)
    try:
        server.run()
    except KeyboardInterrupt:
        logger.info("Server interrupted by user")


if __name__ == "__main__":
    main()
