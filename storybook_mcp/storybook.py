# storybook.py
import io
import os
import re
import sys
import html
import base64
import asyncio
import getpass
import logging
from contextlib import aclosing
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator
from PIL import Image

# Google AI SDK (story text and image generation)
from google import genai
from google.genai import types

# JSON-RPC error codes shared with the MCP transport
from mcp.types import INTERNAL_ERROR, INVALID_PARAMS

logger = logging.getLogger(__name__)

# ------------------ ENV & CONFIG ------------------
# Models (override via env if your account uses different names)
DEFAULT_STORY_MODEL = "gemini-2.5-flash"
DEFAULT_IMAGE_MODEL = "gemini-2.5-flash-image-preview"

ART_STYLES = ("3d cartoon", "watercolor", "pixel art",
              "hand drawn", "claymation")
DEFAULT_ART_STYLE = "3d cartoon"

OUTPUT_SUBDIR = "storybook-images"
FALLBACK_SUBDIR = "output"
IMAGE_EXT = ".png"
STORY_SUFFIX = "_story.txt"
PREVIEW_SUFFIX = "_preview.html"

STORY_FALLBACK = "Once upon a time... (Story generation failed, but the image has been created)"

# Story text gets its own, more deterministic sampling
STORY_GEN_CONFIG = types.GenerateContentConfig(
    temperature=0.7,
    top_k=40,
    top_p=0.95,
    max_output_tokens=1000,
)

IMAGE_GEN_CONFIG = types.GenerateContentConfig(
    response_modalities=["IMAGE", "TEXT"],
)


# ------------------ ERRORS ------------------------


class StorybookError(Exception):
    """Base error; ``code`` is the JSON-RPC error code reported to the host."""
    code = INTERNAL_ERROR


class ConfigurationError(StorybookError):
    pass


class InvalidInvocationError(StorybookError):
    code = INVALID_PARAMS


class ImageGenerationError(StorybookError):
    pass


def env_flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() == "true"


class Settings(BaseModel):
    """Process-wide configuration, built once at startup and never mutated."""
    model_config = ConfigDict(frozen=True)

    api_key: str
    save_to_desktop: bool = False
    debug: bool = False
    story_model: str = DEFAULT_STORY_MODEL
    image_model: str = DEFAULT_IMAGE_MODEL
    auto_open: bool = True

    @classmethod
    def from_env(cls, api_key: Optional[str] = None, save_to_desktop: Optional[bool] = None,
                 debug: Optional[bool] = None, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from explicit (CLI) values, falling back to the environment.
        A value of None means "not passed"; anything else wins over the env var.
        """
        env = os.environ if environ is None else environ

        key = api_key or env.get("GEMINI_API_KEY")
        if not key:
            raise ConfigurationError(
                "GEMINI_API_KEY is required. Use --api-key or set the GEMINI_API_KEY environment variable.")

        if save_to_desktop is None:
            save_to_desktop = env_flag(env.get("SAVE_TO_DESKTOP"))
        if debug is None:
            debug = env_flag(env.get("DEBUG"))

        return cls(
            api_key=key,
            save_to_desktop=save_to_desktop,
            debug=debug,
            story_model=env.get("STORY_MODEL") or DEFAULT_STORY_MODEL,
            image_model=env.get("IMAGE_MODEL") or DEFAULT_IMAGE_MODEL,
            auto_open=env.get("AUTO_OPEN_PREVIEW", "true").strip().lower() != "false",
        )


# ------------------ PROMPTS -----------------------
PROMPTS_DIR = Path(__file__).parent / "prompts"
TEMPLATES_DIR = Path(__file__).parent / "templates"


def load_prompt(name: str) -> str:
    p = PROMPTS_DIR / f"{name}.txt"
    if not p.exists():
        raise FileNotFoundError(f"Prompt file not found: {p}")
    return p.read_text(encoding="utf-8")


def fill(template: str, **kv) -> str:
    """Replace only specific placeholders, leaving CSS and JSON braces alone."""
    return re.sub(r"\{(\w+)\}", lambda m: kv.get(m.group(1), m.group(0)), template)


STORY_PROMPT_TEMPLATE = load_prompt("story")
IMAGE_PROMPT_TEMPLATE = load_prompt("image")
PREVIEW_TEMPLATE = (TEMPLATES_DIR / "preview.html").read_text(encoding="utf-8")

# ------------------ DATA MODELS -------------------


class ToolInvocation(BaseModel):
    prompt: str
    fileName: str
    artStyle: str = DEFAULT_ART_STYLE

    @field_validator("prompt")
    @classmethod
    def _prompt_required(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("prompt is required")
        return v

    @field_validator("fileName")
    @classmethod
    def _base_name_only(cls, v: str) -> str:
        # Artifacts always land in the output directory
        name = Path(v.strip()).name
        if not name:
            raise ValueError("fileName is required")
        return name

    @field_validator("artStyle", mode="before")
    @classmethod
    def _known_style(cls, v: Any) -> str:
        if v is None or v == "":
            return DEFAULT_ART_STYLE
        if v not in ART_STYLES:
            logger.warning("Unknown art style %r, using %r", v, DEFAULT_ART_STYLE)
            return DEFAULT_ART_STYLE
        return v


class GeneratedImage(BaseModel):
    data: bytes
    mimeType: str = "image/png"


class SavedArtifact(BaseModel):
    kind: Literal["image", "story", "preview"]
    path: Path


class StorybookResult(BaseModel):
    success: bool = True
    imagePath: str
    storyPath: str
    htmlPath: str
    message: str = "Storybook image and story generated and saved"
    summary: str


def parse_invocation(arguments: Dict[str, Any]) -> ToolInvocation:
    try:
        return ToolInvocation(**{k: v for k, v in arguments.items() if v is not None})
    except ValidationError as e:
        problems = []
        for err in e.errors():
            field = ".".join(str(loc) for loc in err["loc"]) or "arguments"
            problems.append(f"{field}: {err['msg']}")
        raise InvalidInvocationError(
            "Invalid arguments for generate_storybook_image: " + "; ".join(problems)) from e

# ------------------ UTILITIES ---------------------


def ensure_dir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)


def strip_extension(name: str) -> str:
    return re.sub(r"\.[^/.]+$", "", name)


def file_timestamp(moment: datetime) -> str:
    """ISO-8601 UTC timestamp that is safe to use in a file name."""
    return moment.strftime("%Y-%m-%dT%H-%M-%S-%fZ")


def story_file_name(file_name: str) -> str:
    return f"{strip_extension(file_name)}{STORY_SUFFIX}"


def image_file_name(file_name: str, moment: datetime) -> str:
    # Story names get no timestamp, so a repeated fileName overwrites the story only
    if file_name.endswith(IMAGE_EXT):
        return file_name
    return f"{file_name}_{file_timestamp(moment)}{IMAGE_EXT}"


def preview_file_name(image_name: str) -> str:
    return f"{strip_extension(image_name)}{PREVIEW_SUFFIX}"


def get_desktop_path(platform: Optional[str] = None) -> Path:
    platform = platform or sys.platform
    home = Path.home()
    try:
        if platform == "win32":
            profile = os.environ.get("USERPROFILE")
            if profile:
                desktop = Path(profile) / "Desktop"
            else:
                desktop = Path("C:\\") / "Users" / getpass.getuser() / "Desktop"
            logger.debug("Windows desktop path: %s", desktop)
            if desktop.exists():
                return desktop
            logger.debug("Desktop path not found: %s, falling back to home", desktop)
            return home

        if platform == "darwin":
            # macOS always has one; no existence check
            return home / "Desktop"

        xdg_desktop = os.environ.get("XDG_DESKTOP_DIR")
        if xdg_desktop and Path(xdg_desktop).is_dir():
            logger.debug("XDG desktop path: %s", xdg_desktop)
            return Path(xdg_desktop)
        desktop = home / "Desktop"
        if desktop.exists():
            return desktop
        logger.debug("Using home directory: %s", home)
        return home
    except (OSError, KeyError) as e:
        logger.error("Error detecting desktop path: %s", e)
        return home


def resolve_output_directory(save_to_desktop: bool, platform: Optional[str] = None) -> Path:
    """
    Desktop mode writes to <desktop>/storybook-images, otherwise to
    ./storybook-images under the working directory. The directory is created
    if needed; failure to create it raises OSError.
    """
    if save_to_desktop:
        directory = get_desktop_path(platform) / OUTPUT_SUBDIR
    else:
        directory = Path.cwd() / OUTPUT_SUBDIR
    directory = Path(os.path.normpath(os.path.abspath(directory)))
    ensure_dir(directory)
    return directory


def _write_payload(path: Path, payload: Union[bytes, str]) -> Path:
    if isinstance(payload, bytes):
        path.write_bytes(payload)
    else:
        path.write_text(payload, encoding="utf-8")
    return path


def save_artifact(payload: Union[bytes, str], file_name: str, save_to_desktop: bool) -> Path:
    """
    Write ``payload`` (bytes for images, str for text) into the resolved output
    directory. On failure retry once in ./output; a second failure propagates.
    """
    try:
        path = _write_payload(resolve_output_directory(save_to_desktop) / file_name, payload)
        logger.debug("Saved %s", path)
        return path
    except OSError as e:
        logger.error("Error saving %s: %s", file_name, e)

    fallback_dir = Path.cwd().absolute() / FALLBACK_SUBDIR
    ensure_dir(fallback_dir)
    path = _write_payload(fallback_dir / file_name, payload)
    logger.debug("Fallback save to: %s", path)
    return path


PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


def image_bytes_to_pil(b: bytes) -> Image.Image:
    return Image.open(io.BytesIO(b)).convert("RGBA")


def pil_to_png_bytes(img: Image.Image) -> bytes:
    """Converts a PIL Image object to PNG bytes."""
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def to_png_bytes(image: GeneratedImage) -> bytes:
    if image.mimeType == "image/png" or image.data.startswith(PNG_SIGNATURE):
        return image.data
    try:
        return pil_to_png_bytes(image_bytes_to_pil(image.data))
    except OSError as e:
        logger.warning("Could not re-encode %s image as PNG, keeping raw bytes: %s", image.mimeType, e)
        return image.data


def decode_inline_data(data: Union[bytes, str]) -> bytes:
    # The SDK hands back decoded bytes; raw payloads arrive base64 encoded
    if isinstance(data, str):
        return base64.b64decode(data)
    return bytes(data)

# ------------------ PREVIEW -----------------------


def render_preview(prompt: str, story: str, image_path: Path, story_path: Path) -> str:
    return fill(
        PREVIEW_TEMPLATE,
        prompt=html.escape(prompt),
        story=html.escape(story),
        image_uri=image_path.as_uri(),
        image_path=html.escape(str(image_path)),
        story_path=html.escape(str(story_path)),
    )


def build_preview(prompt: str, story: str, image_path: Path, story_path: Path) -> Path:
    """Write the HTML preview next to the image and return its path."""
    html_path = image_path.parent / preview_file_name(image_path.name)
    ensure_dir(html_path.parent)
    html_path.write_text(render_preview(prompt, story, image_path, story_path), encoding="utf-8")
    return html_path


OPEN_COMMANDS = {"win32": "explorer", "darwin": "open"}
# Openers that stay in the foreground are left running past this
OPEN_WAIT_SECONDS = 5.0


def is_headless(platform: Optional[str] = None) -> bool:
    platform = platform or sys.platform
    return "DISPLAY" not in os.environ and platform not in OPEN_COMMANDS


async def open_preview(html_path: Path, platform: Optional[str] = None) -> bool:
    """
    Best-effort open with the OS default viewer. Never raises; returns whether
    the viewer was launched.
    """
    platform = platform or sys.platform
    if is_headless(platform):
        logger.info("Headless environment detected, skipping browser open")
        return False

    command = OPEN_COMMANDS.get(platform, "xdg-open")
    try:
        # stdout is the protocol channel, keep the child off it
        process = await asyncio.create_subprocess_exec(
            command, str(html_path),
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await asyncio.wait_for(process.communicate(), timeout=OPEN_WAIT_SECONDS)
    except asyncio.TimeoutError:
        logger.info("%s still running after %ss, not waiting for it: %s", command, OPEN_WAIT_SECONDS, html_path)
        return True
    except Exception as e:
        logger.warning("Unable to open browser automatically (%s). File saved at: %s", e, html_path)
        return False

    if process.returncode != 0:
        logger.warning("%s exited with %s: %s. File saved at: %s", command, process.returncode,
                       (stderr or b"").decode(errors="replace").strip(), html_path)
        return False
    logger.info("Opened in browser: %s", html_path)
    return True

# ------------------ GENAI WRAPPER ----------------


class GAIC:
    """Gemini wrapper: one streamed call for the story, one for the image."""

    def __init__(self, settings: Settings, client: Optional[genai.Client] = None):
        self.settings = settings
        self.client = client or genai.Client(api_key=settings.api_key)

    async def stream_parts(self, model: str, prompt: str,
                           config: types.GenerateContentConfig) -> AsyncIterator[Any]:
        """Yield content parts of the first candidate, chunk by chunk, as they arrive."""
        stream = await self.client.aio.models.generate_content_stream(
            model=model, contents=prompt, config=config)
        async for chunk in stream:
            candidates = getattr(chunk, "candidates", None) or []
            if not candidates:
                continue
            content = getattr(candidates[0], "content", None)
            for part in getattr(content, "parts", None) or []:
                yield part

    async def generate_story(self, prompt: str) -> str:
        """Drain the whole stream; never raises, falls back to a placeholder story."""
        story_prompt = fill(STORY_PROMPT_TEMPLATE, prompt=prompt)
        logger.debug("STORY_GENERATION_PROMPT\n%s", story_prompt)

        fragments: List[str] = []
        try:
            async with aclosing(self.stream_parts(self.settings.story_model, story_prompt,
                                                  STORY_GEN_CONFIG)) as parts:
                async for part in parts:
                    if getattr(part, "thought", False):
                        continue
                    text = getattr(part, "text", None)
                    if isinstance(text, str):
                        fragments.append(text)
        except Exception as e:
            logger.error("Error generating story: %s", e)
            return f"Once upon a time... (Story generation failed: {e})"

        story = "".join(fragments)
        if not story.strip():
            return STORY_FALLBACK
        return story

    async def generate_image(self, prompt: str, art_style: str) -> GeneratedImage:
        """Return the first inline image in the stream; the rest is not read."""
        image_prompt = fill(IMAGE_PROMPT_TEMPLATE, art_style=art_style, prompt=prompt)
        logger.debug("IMAGE_GENERATION_PROMPT\n%s", image_prompt)

        try:
            async with aclosing(self.stream_parts(self.settings.image_model, image_prompt,
                                                  IMAGE_GEN_CONFIG)) as parts:
                async for part in parts:
                    inline = getattr(part, "inline_data", None)
                    if inline is not None and getattr(inline, "data", None):
                        return GeneratedImage(
                            data=decode_inline_data(inline.data),
                            mimeType=getattr(inline, "mime_type", None) or "image/png",
                        )
                    text = getattr(part, "text", None)
                    if text:
                        logger.debug("Image model said: %s", text)
        except Exception as e:
            raise ImageGenerationError(f"Failed to generate image: {e}") from e

        raise ImageGenerationError("Failed to generate image: No image data received from the API")

# ------------------ PIPELINE ----------------------


StepCallback = Callable[[str], Awaitable[None]]


async def _no_step(message: str) -> None:
    logger.debug(message)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StorybookGenerator:
    """
    Runs one invocation end to end: story -> story file -> image -> image file
    -> preview. Holds no per-invocation state.
    """

    def __init__(self, settings: Settings, gaic: Optional[GAIC] = None,
                 clock: Callable[[], datetime] = _utcnow):
        self.settings = settings
        self.gaic = gaic or GAIC(settings)
        self.clock = clock

    async def run(self, invocation: ToolInvocation,
                  on_step: Optional[StepCallback] = None) -> StorybookResult:
        step = on_step or _no_step

        await step(f"Writing a story for: {invocation.prompt}")
        story = await self.gaic.generate_story(invocation.prompt)
        story_path = save_artifact(story, story_file_name(invocation.fileName),
                                   self.settings.save_to_desktop)
        story_artifact = SavedArtifact(kind="story", path=story_path)
        await step(f"Story saved to: {story_artifact.path}")

        await step(f"Generating {invocation.artStyle} illustration...")
        image = await self.gaic.generate_image(invocation.prompt, invocation.artStyle)
        image_path = save_artifact(to_png_bytes(image),
                                   image_file_name(invocation.fileName, self.clock()),
                                   self.settings.save_to_desktop)
        image_artifact = SavedArtifact(kind="image", path=image_path)
        await step(f"Image saved to: {image_artifact.path}")

        html_path = build_preview(invocation.prompt, story, image_artifact.path, story_artifact.path)
        preview_artifact = SavedArtifact(kind="preview", path=html_path)
        if self.settings.auto_open:
            await open_preview(preview_artifact.path)

        summary = (
            "Storybook generated successfully!\n"
            f"Image saved to: {image_artifact.path}\n"
            f"Story saved to: {story_artifact.path}\n"
            f"Preview HTML: {preview_artifact.path}"
        )
        logger.info(summary)
        return StorybookResult(
            imagePath=str(image_artifact.path),
            storyPath=str(story_artifact.path),
            htmlPath=str(preview_artifact.path),
            summary=summary,
        )
