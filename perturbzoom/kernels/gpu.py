"""CUDA perturbation kernel (numba.cuda).

One thread per pixel on a 16x16 block grid that covers the image rounded up;
threads outside the image return immediately. The body is the device twin of
``perturbzoom.kernels.cpu.perturb_numba``.
"""

from __future__ import annotations

import math
from functools import lru_cache
from typing import Any, Dict

import numpy as np

from perturbzoom.errors import DeviceUnavailable
from perturbzoom.util.logging_setup import get_logger

THREADS_PER_BLOCK = (16, 16)


@lru_cache(maxsize=1)
def probe_cuda() -> Dict[str, Any]:
    info: Dict[str, Any] = {"available": False}
    try:
        from numba import cuda  # type: ignore
        if not cuda.is_available():
            return info
        dev = cuda.get_current_device()
        info.update({
            "available": True,
            "name": getattr(dev, "name", None),
            "compute_capability": getattr(dev, "compute_capability", None),
            "max_threads_per_block": getattr(dev, "MAX_THREADS_PER_BLOCK", None),
            "warp_size": getattr(dev, "WARP_SIZE", None),
        })
        return info
    except Exception as e:
        info["error"] = str(e)
        return info


@lru_cache(maxsize=1)
def _compile():
    from numba import cuda  # type: ignore

    @cuda.jit
    def perturb_kernel(x_re, x_im, dx_re, dx_im, start, width, height,
                       d0_re, d0_im, d_re, d_im, p_re, p_im,
                       step, trap, radius, dradius, escape_r2):
        tx = cuda.threadIdx.x
        ty = cuda.threadIdx.y
        bx = cuda.blockIdx.x
        by = cuda.blockIdx.y
        bw = cuda.blockDim.x
        bh = cuda.blockDim.y

        px = bx * bw + tx
        py = by * bh + ty
        if px >= width or py >= height:
            return

        i = py * width + px
        if step[i] >= 0:
            return

        dr = d_re[i]
        di = d_im[i]
        pr = p_re[i]
        pim = p_im[i]
        cr = d0_re[i]
        ci = d0_im[i]
        t = trap[i]
        for k in range(x_re.shape[0]):
            xr = x_re[k]
            xi = x_im[k]
            yr = xr + dr
            yi = xi + di
            m2 = yr * yr + yi * yi
            if m2 < t and start + k > 0:
                t = m2
            if m2 > escape_r2:
                step[i] = start + k
                fr = float(yr)
                fi = float(yi)
                radius[i] = math.sqrt(fr * fr + fi * fi)
                qr = float(dx_re[k] + pr)
                qi = float(dx_im[k] + pim)
                dradius[i] = math.sqrt(qr * qr + qi * qi)
                break
            xdr = dx_re[k]
            xdi = dx_im[k]
            ar = (xr * pr - xi * pim) + (xdr * dr - xdi * di) + (dr * pr - di * pim)
            ai = (xr * pim + xi * pr) + (xdr * di + xdi * dr) + (dr * pim + di * pr)
            br = xr * dr - xi * di
            bi = xr * di + xi * dr
            sq = dr * di
            nr = (br + br) + (dr * dr - di * di) + cr
            ni = (bi + bi) + (sq + sq) + ci
            pr = ar + ar
            pim = ai + ai
            dr = nr
            di = ni
        d_re[i] = dr
        d_im[i] = di
        p_re[i] = pr
        p_im[i] = pim
        trap[i] = t

    return cuda, perturb_kernel


def perturb_cuda(x_re, x_im, dx_re, dx_im, start,
                 d0_re, d0_im, d_re, d_im, p_re, p_im,
                 step, trap, radius, dradius, escape_r2, *, width: int, height: int) -> None:
    """Run one segment on the device and copy the mutated buffers back."""
    if not probe_cuda().get("available"):
        raise DeviceUnavailable(f"CUDA device not available: {probe_cuda().get('error', 'no device')}")
    try:
        cuda, kernel = _compile()
        inputs = [cuda.to_device(np.ascontiguousarray(a)) for a in (x_re, x_im, dx_re, dx_im, d0_re, d0_im)]
        mutable = (d_re, d_im, p_re, p_im, step, trap, radius, dradius)
        device = [cuda.to_device(a) for a in mutable]

        blocks_x = math.ceil(width / THREADS_PER_BLOCK[0])
        blocks_y = math.ceil(height / THREADS_PER_BLOCK[1])
        kernel[(blocks_x, blocks_y), THREADS_PER_BLOCK](
            inputs[0], inputs[1], inputs[2], inputs[3], int(start), int(width), int(height),
            inputs[4], inputs[5], *device, escape_r2,
        )
        cuda.synchronize()
        for host, dev in zip(mutable, device):
            dev.copy_to_host(host)
    except DeviceUnavailable:
        raise
    except Exception as e:
        get_logger("gpu").exception("CUDA batch failed")
        raise DeviceUnavailable(f"CUDA kernel launch failed: {e}") from e
