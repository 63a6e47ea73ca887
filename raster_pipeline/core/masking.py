"""
Masking and Threshold Engine

Builds boolean mask rasters (threshold comparisons, quality-bit decoding,
ordered categorical rules) and applies them to rasters. A mask is a
single-band boolean Raster; where it is False or no-data, the masked raster
becomes no-data in every band.

Author: Diego Bengochea
"""

from typing import Iterable, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from shared_utils import get_logger

from .band_algebra import COMPARISON_OPS, BinaryOp, Band, Expression, evaluate_bands, parse_expression
from .errors import InputSchemaError, report_empty_result
from .raster import Raster

logger = get_logger('masking')

MASK_BAND = 'mask'

_OPERATOR_ALIASES = {
    'lt': '<', 'lte': '<=', 'le': '<=',
    'gt': '>', 'gte': '>=', 'ge': '>=',
    'eq': '==', 'neq': '!=', 'ne': '!=',
}


def _single_band(raster: Raster, band: Optional[str]) -> str:
    if band is not None:
        raster.require_bands([band])
        return band
    if len(raster.band_names) != 1:
        raise InputSchemaError(f"Raster has bands {list(raster.band_names)}; specify which band to use")
    return raster.band_names[0]


def _mask_raster(raster: Raster, values: np.ndarray, nodata: np.ndarray, name: str = MASK_BAND) -> Raster:
    return Raster({name: np.ma.MaskedArray(values.astype(bool), mask=nodata)}, raster.grid, metadata=raster.metadata)


def threshold(raster: Raster, op: str, value: float, band: Optional[str] = None,
              name: str = MASK_BAND) -> Raster:
    """
    Boolean mask from comparing a band against a constant.

    Args:
        raster: Input raster
        op: Comparison operator ('<', '<=', '>', '>=', '==', '!=' or lt/gt/... aliases)
        value: Threshold value
        band: Band to compare; may be omitted for single-band rasters
        name: Output band name

    Returns:
        Single-band boolean Raster; no-data where the band is no-data
    """
    op = _OPERATOR_ALIASES.get(op, op)
    if op not in COMPARISON_OPS:
        raise InputSchemaError(f"Unknown comparison operator '{op}'")
    band = _single_band(raster, band)
    result = evaluate_bands(BinaryOp(op, Band(band), value), raster.bands(), raster.shape)
    return _mask_raster(raster, np.ma.getdata(result), np.ma.getmaskarray(result), name)


def bit_is_set(raster: Raster, bit_index: int, band: Optional[str] = None, name: str = MASK_BAND) -> Raster:
    """
    Mask that is True where the given bit of an integer band is set.

    Signed bands are read through their two's-complement bit pattern, so bit
    15 of an int16 band is set exactly for negative values.

    Raises:
        InputSchemaError: If the band is not integer or bit_index is outside its width
    """
    band = _single_band(raster, band)
    values = raster.band(band)
    data = np.ma.getdata(values)
    if data.dtype.kind not in 'biu':
        raise InputSchemaError(f"Bit decoding requires an integer band, '{band}' is {data.dtype}")

    width = data.dtype.itemsize * 8
    if not 0 <= int(bit_index) < width:
        raise InputSchemaError(f"Bit index {bit_index} outside the {width}-bit width of band '{band}'")

    unsigned = data.view(np.dtype(f'u{data.dtype.itemsize}'))
    is_set = (unsigned >> unsigned.dtype.type(bit_index)) & 1
    return _mask_raster(raster, is_set, np.ma.getmaskarray(values), name)


def bitmask_clear(raster: Raster, bits: Iterable[int], band: Optional[str] = None,
                  name: str = MASK_BAND) -> Raster:
    """
    Mask that is True where every listed bit is clear.

    Example: QA60 cloud (bit 10) and cirrus (bit 11) both clear.
    """
    bits = list(bits)
    if not bits:
        raise InputSchemaError("bitmask_clear needs at least one bit index")
    band = _single_band(raster, band)
    clear = None
    for bit in bits:
        bit_mask = bit_is_set(raster, bit, band)
        is_clear = ~np.ma.getdata(bit_mask.band(MASK_BAND))
        clear = is_clear if clear is None else clear & is_clear
    return _mask_raster(raster, clear, np.ma.getmaskarray(raster.band(band)), name)


def _mask_values(mask_raster: Raster, band: Optional[str]) -> Tuple[np.ndarray, np.ndarray]:
    values = mask_raster.band(_single_band(mask_raster, band))
    return np.ma.getdata(values) != 0, np.ma.getmaskarray(values)


def mask(raster: Raster, predicate: Raster, band: Optional[str] = None) -> Raster:
    """
    Suppress pixels where the predicate is False or no-data.

    Args:
        raster: Raster to mask
        predicate: Mask raster on the same grid
        band: Predicate band for multi-band predicate rasters

    Returns:
        Raster with the same bands and the combined validity mask

    Raises:
        InputSchemaError: If the predicate grid is not aligned with the raster
    """
    if not raster.grid.aligned_with(predicate.grid):
        raise InputSchemaError("Mask grid is not aligned with the raster grid")

    keep, unknown = _mask_values(predicate, band)
    suppress = ~keep | unknown

    masked = raster.map_bands(
        lambda values: np.ma.MaskedArray(np.ma.getdata(values), mask=np.ma.getmaskarray(values) | suppress)
    )
    if masked.valid_count() == 0 and raster.valid_count() > 0:
        report_empty_result(logger, f"mask removed every valid pixel of {raster.metadata.scene_id or 'raster'}")
    return masked


def self_mask(raster: Raster) -> Raster:
    """Mark zero-valued pixels as no-data in every band."""
    return raster.map_bands(
        lambda values: np.ma.MaskedArray(np.ma.getdata(values),
                                         mask=np.ma.getmaskarray(values) | (np.ma.getdata(values) == 0))
    )


def invert_mask(mask_raster: Raster, band: Optional[str] = None, name: str = MASK_BAND) -> Raster:
    """Logical NOT of a mask; no-data stays no-data."""
    keep, unknown = _mask_values(mask_raster, band)
    return _mask_raster(mask_raster, ~keep, unknown, name)


def combine_masks(*masks: Raster, how: str = 'and', name: str = MASK_BAND) -> Raster:
    """
    Combine single-band masks on one grid with AND or OR.

    No-data in any input is no-data in the output.
    """
    if not masks:
        raise InputSchemaError("combine_masks needs at least one mask")
    if how not in ('and', 'or'):
        raise InputSchemaError(f"how must be 'and' or 'or', got '{how}'")

    reference = masks[0]
    keep, unknown = _mask_values(reference, None)
    for other in masks[1:]:
        if not reference.grid.aligned_with(other.grid):
            raise InputSchemaError("Cannot combine masks on different grids")
        other_keep, other_unknown = _mask_values(other, None)
        keep = keep & other_keep if how == 'and' else keep | other_keep
        unknown = unknown | other_unknown
    return _mask_raster(reference, keep, unknown, name)


Rule = Tuple[Union[Expression, str], Union[int, float]]


def classify_by_rules(raster: Raster, rules: Sequence[Rule], default: Optional[Union[int, float]] = None,
                      name: str = 'class', operands: Optional[Mapping[str, str]] = None) -> Raster:
    """
    Assign categorical values by ordered first-match rules.

    Rules are evaluated in order and a pixel takes the value of the first rule
    whose predicate is True there. A pixel whose deciding predicate is no-data
    is no-data. Pixels matching no rule take default, or no-data when default
    is None.

    Args:
        raster: Input raster
        rules: Sequence of (predicate expression or formula, value)
        default: Value for pixels matching no rule
        name: Output band name
        operands: Name bindings for textual predicates

    Returns:
        Single-band Raster, int32 when every value is an integer, else float64

    Examples:
        >>> density = classify_by_rules(ndvi, [('ndvi < 0.2', 1), ('ndvi < 0.5', 2)], default=3)
    """
    if not rules:
        raise InputSchemaError("classify_by_rules needs at least one rule")

    predicates = [parse_expression(p, operands) if isinstance(p, str) else p for p, _ in rules]
    for predicate in predicates:
        raster.require_bands(sorted(predicate.band_names()))

    values = [value for _, value in rules] + ([default] if default is not None else [])
    integral = all(float(v).is_integer() for v in values)
    dtype = np.int32 if integral else np.float64

    output = np.zeros(raster.shape, dtype=dtype)
    nodata = np.zeros(raster.shape, dtype=bool)
    undecided = np.ones(raster.shape, dtype=bool)
    bands = raster.bands()

    for predicate, (_, value) in zip(predicates, rules):
        result = evaluate_bands(predicate, bands, raster.shape)
        unknown = undecided & np.ma.getmaskarray(result)
        matched = undecided & ~np.ma.getmaskarray(result) & (np.ma.getdata(result) != 0)
        nodata |= unknown
        output[matched] = value
        undecided &= ~(unknown | matched)

    if default is None:
        nodata |= undecided
    else:
        output[undecided] = default

    return Raster({name: np.ma.MaskedArray(output, mask=nodata)}, raster.grid, metadata=raster.metadata)
