"""Host-side perturbation kernels.

Both kernels advance every still-active pixel through one orbit segment
``x_re/x_im`` (``X_n``) and ``dx_re/dx_im`` (``X'_n``), starting at absolute
step ``start``, updating the per-pixel buffers in place:

* ``Y = X_n + delta``; the trap keeps the smallest ``|Y|**2`` from step 1
  on (``Y_0`` is always the origin);
* ``|Y|**2 > escape_r2``: record the step, ``|Y|`` and ``|X'_n + delta'|``;
* ``delta' <- 2 X delta' + 2 X' delta + 2 delta delta'``;
* ``delta  <- 2 X delta + delta**2 + delta_0``.

All arithmetic stays in the dtype of the buffers. Doubling is written as
``a + a`` so no wider literal can promote a single-precision pixel, and the
escape radius arrives as a scalar of the same dtype. Escape magnitudes are
reported in float64 because they feed logs in the coloring stage.
"""

from __future__ import annotations

import math

import numpy as np
from numba import njit, prange


@njit(parallel=True)
def perturb_numba(x_re, x_im, dx_re, dx_im, start,
                  d0_re, d0_im, d_re, d_im, p_re, p_im,
                  step, trap, radius, dradius, escape_r2):
    count = x_re.shape[0]
    for i in prange(d_re.shape[0]):
        if step[i] < 0:
            dr = d_re[i]
            di = d_im[i]
            pr = p_re[i]
            pim = p_im[i]
            cr = d0_re[i]
            ci = d0_im[i]
            t = trap[i]
            for k in range(count):
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


def perturb_numpy(x_re, x_im, dx_re, dx_im, start,
                  d0_re, d0_im, d_re, d_im, p_re, p_im,
                  step, trap, radius, dradius, escape_r2):
    """Vectorised twin of ``perturb_numba``; works for ``numpy.longdouble`` too.

    Active pixels are gathered once, iterated as compact arrays that shrink as
    pixels escape, and scattered back at the end of the segment.
    """
    idx = np.flatnonzero(step < 0)
    if idx.size == 0:
        return
    dr, di = d_re[idx], d_im[idx]
    pr, pim = p_re[idx], p_im[idx]
    cr, ci = d0_re[idx], d0_im[idx]
    t = trap[idx]

    def scatter(where):
        d_re[where[0]] = dr[where[1]]
        d_im[where[0]] = di[where[1]]
        p_re[where[0]] = pr[where[1]]
        p_im[where[0]] = pim[where[1]]
        trap[where[0]] = t[where[1]]

    with np.errstate(over="ignore", invalid="ignore"):
        for k in range(x_re.shape[0]):
            xr, xi = x_re[k], x_im[k]
            yr = xr + dr
            yi = xi + di
            m2 = yr * yr + yi * yi
            if start + k > 0:
                np.minimum(t, m2, out=t)
            esc = m2 > escape_r2
            if esc.any():
                hit = idx[esc]
                step[hit] = start + k
                fr = yr[esc].astype(np.float64)
                fi = yi[esc].astype(np.float64)
                radius[hit] = np.sqrt(fr * fr + fi * fi)
                qr = (dx_re[k] + pr[esc]).astype(np.float64)
                qi = (dx_im[k] + pim[esc]).astype(np.float64)
                dradius[hit] = np.sqrt(qr * qr + qi * qi)
                scatter((hit, esc))
                keep = ~esc
                idx = idx[keep]
                dr, di, pr, pim, cr, ci, t = (a[keep] for a in (dr, di, pr, pim, cr, ci, t))
                if idx.size == 0:
                    return
            xdr, xdi = dx_re[k], dx_im[k]
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
    scatter((idx, slice(None)))
