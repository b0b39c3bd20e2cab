import logging
from io import BytesIO

import numpy as np
import pytest
from epaper_dithering import ColorScheme
from PIL import Image

import frame_render
from frame_errors import ConfigError, DecodeError, DitherMismatchError, OrientationRejected
from frame_render import (
    CropStrategy, DitherMode, DitherResult, RenderOptions, RawImage,
    cover_size, dither, parse_crop_strategy, parse_dither_mode, resize_cover, transform,
)


def make_jpeg(width, height):
    # horizontal bands plus a diagonal ramp so every crop window differs
    y, x = np.mgrid[0:height, 0:width]
    r = ((y // 40) % 2) * 200 + 20
    g = (x * 255 // max(1, width - 1))
    b = (y * 255 // max(1, height - 1))
    arr = np.stack([r, g, b], axis=-1).astype(np.uint8)
    buf = BytesIO()
    Image.fromarray(arr).save(buf, format='JPEG', quality=90)
    return buf.getvalue()


def png_header(data):
    assert data[:8] == b'\x89PNG\r\n\x1a\n'
    width = int.from_bytes(data[16:20], 'big')
    height = int.from_bytes(data[20:24], 'big')
    return width, height, data[24], data[25]


def test_example_landscape_source_is_800x480_one_bit_palette():
    result = transform(make_jpeg(1200, 800), RenderOptions())
    assert result.mimetype == 'image/png'
    assert (result.width, result.height) == (800, 480)
    width, height, bit_depth, colour_type = png_header(result.data)
    assert (width, height) == (800, 480)
    assert bit_depth == 1
    assert colour_type == 3  # indexed colour
    img = Image.open(BytesIO(result.data))
    assert img.mode in ('P', '1')
    assert img.size == (800, 480)
    assert len(img.getcolors()) <= 2


def test_crop_anchor_changes_pixels_not_size():
    source = make_jpeg(1200, 800)
    center = transform(source, RenderOptions(dither_mode=DitherMode.NONE))
    top = transform(source, RenderOptions(crop_strategy=parse_crop_strategy('top'), dither_mode=DitherMode.NONE))
    assert (top.width, top.height) == (center.width, center.height) == (800, 480)
    assert top.data != center.data


def test_transform_is_deterministic():
    source = make_jpeg(300, 200)
    options = RenderOptions(width=120, height=72, crop_strategy=CropStrategy.ATTENTION)
    assert transform(source, options).data == transform(source, options).data


def test_portrait_and_square_rejected_when_landscape_only():
    with pytest.raises(OrientationRejected) as info:
        transform(make_jpeg(200, 300), RenderOptions(width=80, height=48))
    assert (info.value.width, info.value.height) == (200, 300)
    with pytest.raises(OrientationRejected):
        transform(make_jpeg(250, 250), RenderOptions(width=80, height=48))


def test_portrait_allowed_when_policy_off():
    result = transform(make_jpeg(200, 300), RenderOptions(width=80, height=48, landscape_only=False))
    assert (result.width, result.height) == (80, 48)


def test_undecodable_bytes_raise_decode_error():
    with pytest.raises(DecodeError):
        transform(b'<html>not an image</html>', RenderOptions(width=80, height=48))


def test_dither_count_mismatch_is_fatal():
    def short_dither(raw, scheme, mode):
        indices = np.zeros(raw.width * raw.height - 1, dtype=np.uint8)
        return DitherResult(raw.width, raw.height, indices, ((0, 0, 0), (255, 255, 255)))

    with pytest.raises(DitherMismatchError) as info:
        transform(make_jpeg(300, 200), RenderOptions(width=80, height=48), dither_fn=short_dither)
    assert info.value.expected == 80 * 48
    assert info.value.actual == 80 * 48 - 1


@pytest.mark.parametrize('src, dst, expected', [
    ((1200, 800), (800, 480), (800, 534)),
    ((1600, 600), (800, 480), (1280, 480)),
    ((800, 480), (800, 480), (800, 480)),
    ((400, 240), (800, 480), (800, 480)),
])
def test_cover_size_covers_target(src, dst, expected):
    assert cover_size(*src, *dst) == expected


@pytest.mark.parametrize('strategy', list(CropStrategy))
def test_every_crop_strategy_yields_target_size(strategy):
    img = Image.open(BytesIO(make_jpeg(320, 180))).convert('RGB')
    assert resize_cover(img, 96, 80, strategy).size == (96, 80)


def test_compass_offsets():
    img = Image.new('RGB', (200, 100))
    assert frame_render.crop_offset(img, 100, 100, CropStrategy.WEST) == (0, 0)
    assert frame_render.crop_offset(img, 100, 100, CropStrategy.CENTER) == (50, 0)
    assert frame_render.crop_offset(img, 100, 100, CropStrategy.EAST) == (100, 0)


def test_entropy_prefers_detailed_region():
    img = Image.new('RGB', (300, 100), 'white')
    noise = np.random.RandomState(0).randint(0, 256, (100, 100, 3)).astype(np.uint8)
    img.paste(Image.fromarray(noise), (200, 0))
    assert frame_render.crop_offset(img, 100, 100, CropStrategy.ENTROPY) == (200, 0)


@pytest.mark.parametrize('name, expected', [
    ('center', CropStrategy.CENTER),
    ('centre', CropStrategy.CENTER),
    ('top', CropStrategy.NORTH),
    ('Right Top', CropStrategy.NORTHEAST),
    ('southwest', CropStrategy.SOUTHWEST),
    ('entropy', CropStrategy.ENTROPY),
    ('attention', CropStrategy.ATTENTION),
])
def test_parse_crop_strategy(name, expected):
    assert parse_crop_strategy(name) is expected


def test_unknown_crop_strategy_falls_back_with_warning(caplog):
    with caplog.at_level(logging.WARNING, logger='inkframe.render'):
        assert parse_crop_strategy('diagonal') is CropStrategy.CENTER
    assert 'diagonal' in caplog.text


def test_unknown_dither_mode_falls_back_with_warning(caplog):
    assert parse_dither_mode('FLOYD_STEINBERG') is DitherMode.FLOYD_STEINBERG
    assert parse_dither_mode('sierra lite') is DitherMode.SIERRA_LITE
    with caplog.at_level(logging.WARNING, logger='inkframe.render'):
        assert parse_dither_mode('halftone') is frame_render.DEFAULT_DITHER_MODE
    assert 'halftone' in caplog.text


@pytest.mark.parametrize('mode', list(DitherMode))
def test_dither_modes_produce_binary_indices(mode):
    img = Image.open(BytesIO(make_jpeg(64, 40))).convert('RGBA')
    result = dither(RawImage(64, 40, img.tobytes()), mode=mode)
    assert len(result.indices) == 64 * 40
    assert set(np.unique(result.indices)) <= {0, 1}
    assert result.palette == ((0, 0, 0), (255, 255, 255))


def test_error_diffusion_mixes_both_inks_for_mid_grey():
    grey = Image.new('RGBA', (64, 64), (128, 128, 128, 255))
    result = dither(RawImage(64, 64, grey.tobytes()), mode=DitherMode.FLOYD_STEINBERG)
    # both inks are used; the exact ratio depends on the library's tone curve
    assert 0.1 < result.indices.mean() < 0.9


def test_transparent_pixels_render_white():
    clear = Image.new('RGBA', (8, 8), (0, 0, 0, 0))
    result = dither(RawImage(8, 8, clear.tobytes()), mode=DitherMode.NONE)
    assert result.indices.min() == 1


def test_index_one_maps_to_white():
    white = Image.new('RGB', (160, 96), 'white')
    buf = BytesIO()
    white.save(buf, format='PNG')
    result = transform(buf.getvalue(), RenderOptions(width=80, height=48))
    out = Image.open(BytesIO(result.data)).convert('L')
    assert out.getextrema() == (255, 255)


def test_dither_delegates_to_epaper_dithering(monkeypatch):
    calls = []
    real = frame_render.dither_image

    def recording(img, scheme, mode):
        calls.append((img.mode, img.size, scheme, mode))
        return real(img, scheme, mode=mode)

    monkeypatch.setattr(frame_render, 'dither_image', recording)
    img = Image.open(BytesIO(make_jpeg(32, 20))).convert('RGBA')
    result = dither(RawImage(32, 20, img.tobytes()), mode=DitherMode.ATKINSON)
    assert calls == [('RGB', (32, 20), ColorScheme.MONO, DitherMode.ATKINSON)]
    assert (result.width, result.height) == (32, 20)


def test_dither_mode_names_match_library_enum():
    for mode in DitherMode:
        assert parse_dither_mode(frame_render.dither_mode_name(mode)) is mode
    assert frame_render.dither_mode_name(DitherMode.JARVIS_JUDICE_NINKE) == 'jarvis-judice-ninke'


@pytest.mark.parametrize('image_cfg', [
    {'landscape_only': 'false'},
    {'width': 'wide'},
    {'height': 4.5},
    {'width': True},
])
def test_render_options_reject_untyped_values(image_cfg):
    with pytest.raises(ConfigError):
        RenderOptions.from_config(image_cfg)


def test_render_options_from_typed_config():
    options = RenderOptions.from_config({'width': 640, 'height': 384, 'landscape_only': False,
                                         'crop_strategy': 'top-left', 'dither_mode': 'sierra-lite'})
    assert (options.width, options.height) == (640, 384)
    assert options.landscape_only is False
    assert options.crop_strategy is CropStrategy.NORTHWEST
    assert options.dither_mode is DitherMode.SIERRA_LITE
