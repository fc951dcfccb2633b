"""Figure factories for the scgroupfit report."""

from scgroupfit.plotting.expression import plot_corrected_statistics, plot_library_boxplots
from scgroupfit.plotting.normalization import plot_size_factor_comparison
from scgroupfit.plotting.styles import DEFAULT_PLOT_STYLE, PlotStyle, apply_plot_style
from scgroupfit.plotting.utils import png_data_uri, save_figure

__all__ = [
    "PlotStyle",
    "DEFAULT_PLOT_STYLE",
    "apply_plot_style",
    "save_figure",
    "png_data_uri",
    "plot_size_factor_comparison",
    "plot_library_boxplots",
    "plot_corrected_statistics",
]
