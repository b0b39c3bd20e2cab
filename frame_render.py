"""Image transform chain for 1-bit e-paper output.

decode -> orientation gate -> cover resize with crop anchor -> RGBA raw
buffer -> 2-colour dither -> index check -> intensity map -> 1-bit PNG.

Every step is deterministic: the same bytes and :class:`RenderOptions`
always produce the same PNG bytes.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from io import BytesIO

import numpy as np
from epaper_dithering import ColorScheme, DitherMode, dither_image
from PIL import Image, ImageFilter, ImageOps, UnidentifiedImageError

from frame_errors import ConfigError, DecodeError, DitherMismatchError, OrientationRejected

logger = logging.getLogger('inkframe.render')

DEFAULT_WIDTH = 800
DEFAULT_HEIGHT = 480


class CropStrategy(Enum):
    CENTER = 'center'
    NORTH = 'north'
    NORTHEAST = 'northeast'
    EAST = 'east'
    SOUTHEAST = 'southeast'
    SOUTH = 'south'
    SOUTHWEST = 'southwest'
    WEST = 'west'
    NORTHWEST = 'northwest'
    ENTROPY = 'entropy'
    ATTENTION = 'attention'


# horizontal, vertical anchor in halves (0 = start, 1 = middle, 2 = end)
_COMPASS_ANCHORS = {
    CropStrategy.CENTER: (1, 1),
    CropStrategy.NORTH: (1, 0),
    CropStrategy.NORTHEAST: (2, 0),
    CropStrategy.EAST: (2, 1),
    CropStrategy.SOUTHEAST: (2, 2),
    CropStrategy.SOUTH: (1, 2),
    CropStrategy.SOUTHWEST: (0, 2),
    CropStrategy.WEST: (0, 1),
    CropStrategy.NORTHWEST: (0, 0),
}

_CROP_ALIASES = {
    'centre': CropStrategy.CENTER,
    'top': CropStrategy.NORTH,
    'right top': CropStrategy.NORTHEAST,
    'top right': CropStrategy.NORTHEAST,
    'right': CropStrategy.EAST,
    'right bottom': CropStrategy.SOUTHEAST,
    'bottom right': CropStrategy.SOUTHEAST,
    'bottom': CropStrategy.SOUTH,
    'left bottom': CropStrategy.SOUTHWEST,
    'bottom left': CropStrategy.SOUTHWEST,
    'left': CropStrategy.WEST,
    'left top': CropStrategy.NORTHWEST,
    'top left': CropStrategy.NORTHWEST,
}


DEFAULT_DITHER_MODE = DitherMode.BURKES


def dither_mode_name(mode):
    return mode.name.lower().replace('_', '-')


def _normalize_name(name):
    return ' '.join(str(name or '').strip().lower().replace('_', ' ').split())


def parse_crop_strategy(name):
    """Map a configured name to a CropStrategy; unknown names mean CENTER."""
    key = _normalize_name(str(name or '').replace('-', ' '))
    if key in _CROP_ALIASES:
        return _CROP_ALIASES[key]
    for strategy in CropStrategy:
        if strategy.value == key:
            return strategy
    logger.warning(f"Unknown crop strategy {name!r}, falling back to center")
    return CropStrategy.CENTER


def parse_dither_mode(name):
    """Map a configured name to a DitherMode; unknown names mean the default."""
    key = _normalize_name(name).replace(' ', '-')
    for mode in DitherMode:
        if dither_mode_name(mode) == key:
            return mode
    logger.warning(f"Unknown dither mode {name!r}, falling back to {dither_mode_name(DEFAULT_DITHER_MODE)}")
    return DEFAULT_DITHER_MODE


@dataclass(frozen=True)
class RenderOptions:
    width: int = DEFAULT_WIDTH
    height: int = DEFAULT_HEIGHT
    landscape_only: bool = True
    crop_strategy: CropStrategy = CropStrategy.CENTER
    dither_mode: DitherMode = DEFAULT_DITHER_MODE

    @classmethod
    def from_config(cls, image_cfg):
        """Build options from an already type-checked ``[image]`` section."""
        landscape_only = image_cfg.get('landscape_only', True)
        if not isinstance(landscape_only, bool):
            raise ConfigError(f"image.landscape_only must be a boolean, got {landscape_only!r}")
        sizes = {}
        for key, default in (('width', DEFAULT_WIDTH), ('height', DEFAULT_HEIGHT)):
            value = image_cfg.get(key, default)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigError(f"image.{key} must be an integer, got {value!r}")
            sizes[key] = value
        return cls(
            width=sizes['width'],
            height=sizes['height'],
            landscape_only=landscape_only,
            crop_strategy=parse_crop_strategy(image_cfg.get('crop_strategy', 'center')),
            dither_mode=parse_dither_mode(image_cfg.get('dither_mode', dither_mode_name(DEFAULT_DITHER_MODE))),
        )


@dataclass(frozen=True)
class RawImage:
    width: int
    height: int
    data: bytes  # RGBA, 4 bytes per pixel


@dataclass(frozen=True)
class DitherResult:
    width: int
    height: int
    indices: np.ndarray  # one palette index per pixel, row-major
    palette: tuple


@dataclass(frozen=True)
class ProcessedImage:
    data: bytes
    mimetype: str
    width: int
    height: int


def decode(data):
    """Decode bytes into an upright RGB image."""
    try:
        img = Image.open(BytesIO(data))
        img.load()
        img = ImageOps.exif_transpose(img)
        return img.convert('RGB')
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as e:
        raise DecodeError(f"Cannot decode image: {e}") from e


def cover_size(src_w, src_h, dst_w, dst_h):
    """Smallest size with the source aspect ratio that covers the target box."""
    if src_w * dst_h >= dst_w * src_h:
        return max(dst_w, -(-src_w * dst_h // src_h)), dst_h
    return dst_w, max(dst_h, -(-src_h * dst_w // src_w))


def _window_offsets(slack, steps=16):
    step = max(1, slack // steps)
    offsets = list(range(0, slack + 1, step))
    if offsets[-1] != slack:
        offsets.append(slack)
    return offsets


def _entropy_offset(img, dst_w, dst_h):
    slack_x, slack_y = img.width - dst_w, img.height - dst_h
    gray = img.convert('L')
    best, best_score = (slack_x // 2, slack_y // 2), -1.0
    for ox in _window_offsets(slack_x):
        for oy in _window_offsets(slack_y):
            score = gray.crop((ox, oy, ox + dst_w, oy + dst_h)).entropy()
            if score > best_score:
                best, best_score = (ox, oy), score
    return best


def _saliency_map(img):
    """Edges + saturation + skin tones, the cues an eye is drawn to."""
    edges = np.asarray(img.convert('L').filter(ImageFilter.FIND_EDGES), dtype=np.float64)
    hsv = np.asarray(img.convert('HSV'), dtype=np.float64)
    saturation = hsv[..., 1]
    rgb = np.asarray(img, dtype=np.int32)
    r, g, b = rgb[..., 0], rgb[..., 1], rgb[..., 2]
    skin = ((r > 95) & (g > 40) & (b > 20) & (r > g) & (r > b)
            & ((r - np.minimum(g, b)) > 15) & (np.abs(r - g) > 15))
    return edges + 0.5 * saturation + 128.0 * skin


def _attention_offset(img, dst_w, dst_h):
    slack_x, slack_y = img.width - dst_w, img.height - dst_h
    saliency = _saliency_map(img)
    # integral image for O(1) window sums
    integral = np.zeros((img.height + 1, img.width + 1), dtype=np.float64)
    integral[1:, 1:] = saliency.cumsum(axis=0).cumsum(axis=1)
    best, best_score = (slack_x // 2, slack_y // 2), -1.0
    for ox in _window_offsets(slack_x, steps=32):
        for oy in _window_offsets(slack_y, steps=32):
            score = (integral[oy + dst_h, ox + dst_w] - integral[oy, ox + dst_w]
                     - integral[oy + dst_h, ox] + integral[oy, ox])
            if score > best_score:
                best, best_score = (ox, oy), score
    return best


def crop_offset(img, dst_w, dst_h, strategy):
    if strategy is CropStrategy.ENTROPY:
        return _entropy_offset(img, dst_w, dst_h)
    if strategy is CropStrategy.ATTENTION:
        return _attention_offset(img, dst_w, dst_h)
    ax, ay = _COMPASS_ANCHORS.get(strategy, (1, 1))
    return (img.width - dst_w) * ax // 2, (img.height - dst_h) * ay // 2


def resize_cover(img, dst_w, dst_h, strategy=CropStrategy.CENTER):
    new_w, new_h = cover_size(img.width, img.height, dst_w, dst_h)
    if (new_w, new_h) != img.size:
        img = img.resize((new_w, new_h), Image.LANCZOS)
    left, top = crop_offset(img, dst_w, dst_h, strategy)
    return img.crop((left, top, left + dst_w, top + dst_h))


def to_raw_rgba(img):
    rgba = img.convert('RGBA')
    return RawImage(rgba.width, rgba.height, rgba.tobytes())


def dither(raw, color_scheme=ColorScheme.MONO, mode=DEFAULT_DITHER_MODE):
    """Reduce an RGBA buffer to palette indices for ``color_scheme``."""
    rgba = Image.frombytes('RGBA', (raw.width, raw.height), raw.data)
    # transparent areas render as white paper
    paper = Image.new('RGB', rgba.size, (255, 255, 255))
    paper.paste(rgba, mask=rgba.getchannel('A'))
    result = dither_image(paper, color_scheme, mode=mode)
    flat = (result.getpalette() or [])[:6]
    palette = tuple(tuple(flat[i:i + 3]) for i in range(0, len(flat), 3))
    indices = np.asarray(result, dtype=np.uint8).reshape(-1)
    return DitherResult(result.width, result.height, indices, palette)


def encode_png(levels, width, height):
    """Encode 0/255 levels as a 1-bit, two colour palette PNG."""
    paletted = Image.frombytes('P', (width, height), (levels >> 7).tobytes())
    paletted.putpalette([0, 0, 0, 255, 255, 255])
    buf = BytesIO()
    paletted.save(buf, format='PNG', bits=1, optimize=True, compress_level=9)
    return buf.getvalue()


def transform(data, options=None, dither_fn=dither):
    options = options or RenderOptions()
    img = decode(data)
    if options.landscape_only and img.height >= img.width:
        raise OrientationRejected(img.width, img.height)

    cropped = resize_cover(img, options.width, options.height, options.crop_strategy)
    raw = to_raw_rgba(cropped)
    result = dither_fn(raw, ColorScheme.MONO, options.dither_mode)

    expected = result.width * result.height
    if len(result.indices) != expected or (result.width, result.height) != (options.width, options.height):
        raise DitherMismatchError(options.width * options.height, len(result.indices),
                                  result.width, result.height)

    # index 1 is "on"/white by convention; the palette is only checked, not trusted
    if tuple(result.palette[1]) != (255, 255, 255):
        logger.warning(f"Dither palette {result.palette!r} does not put white at index 1")
    levels = np.where(np.asarray(result.indices) == 1, 255, 0).astype(np.uint8)
    png = encode_png(levels, result.width, result.height)
    return ProcessedImage(png, 'image/png', result.width, result.height)
