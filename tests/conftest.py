import numpy as np
import pandas as pd
import pytest
import geopandas as gpd
from shapely.geometry import box

from la_price_clusters.utils import ID_COLUMNS
from la_price_clusters.plots import CODE_FIELD

PERIODS = ['Year ending Dec 2019', 'Year ending Dec 2020',
           'Year ending Dec 2021', 'Year ending Dec 2022']

# Growth multipliers relative to the first period, one per trajectory shape
TRAJECTORIES = [
    [1.0, 1.1, 1.2, 1.3, 1.4],
    [1.0, 1.5, 2.0, 2.5, 3.0],
    [1.0, 0.9, 0.8, 0.85, 0.9],
    [1.0, 2.0, 3.0, 4.0, 5.0],
]


def make_wide(rows, periods):
    """Builds a wide sheet from (region, la_code, la_name, prices) tuples."""
    records = []
    for region, code, name, prices in rows:
        record = {
            'region_code': f'E1200000{region}',
            'region_name': f'Region {region}',
            'la_code': code,
            'la_name': name,
        }
        record.update(dict(zip(periods, prices)))
        records.append(record)
    return pd.DataFrame(records, columns=ID_COLUMNS + list(periods))


@pytest.fixture
def three_location_wide():
    """Two locations with the same growth trajectory and one divergent one."""
    return make_wide([
        (1, 'E06000001', 'Hartlepool', [100000, 110000, 120000, 130000]),
        (1, 'E06000002', 'Middlesbrough', [200000, 220000, 240000, 260000]),
        (2, 'E06000003', 'Redcar and Cleveland', [100000, 150000, 250000, 400000]),
    ], PERIODS)


@pytest.fixture
def grouped_wide():
    """Eight locations, two per trajectory shape."""
    periods = PERIODS + ['Year ending Dec 2023']
    rows = []
    for g, growth in enumerate(TRAJECTORIES):
        for j, base in enumerate((150000, 300000)):
            code = f'E0700000{2 * g + j}'
            noise = 1.0 + 0.005 * j
            prices = [base * m * (noise if i else 1.0) for i, m in enumerate(growth)]
            rows.append((g % 2, code, f'District {2 * g + j}', prices))
    return make_wide(rows, periods)


@pytest.fixture
def grouped_matrix():
    """Location x date matrix with four well separated groups of two."""
    rng = np.random.default_rng(0)
    rows = {}
    for g, growth in enumerate(TRAJECTORIES):
        for j in range(2):
            rows[f'E0700000{2 * g + j}'] = np.array(growth) * 100 + rng.normal(0, 0.5, len(growth))
    dates = pd.date_range('2019-12-01', periods=5, freq='12MS')
    return pd.DataFrame.from_dict(rows, orient='index', columns=dates)


@pytest.fixture
def boundaries_for():
    """Factory building square polygons for a list of codes."""
    def _build(codes):
        geoms = [box(-2.0 + i * 0.1, 52.0, -1.9 + i * 0.1, 52.1) for i in range(len(codes))]
        return gpd.GeoDataFrame({CODE_FIELD: list(codes)}, geometry=geoms, crs='EPSG:4326')
    return _build


@pytest.fixture
def write_workbook():
    """Writes a wide sheet below a block of title rows, like the ONS release."""
    def _write(wide, path, sheet_name='2a', skiprows=6):
        with pd.ExcelWriter(path, engine='openpyxl') as writer:
            wide.to_excel(writer, sheet_name=sheet_name, startrow=skiprows, index=False)
            sheet = writer.sheets[sheet_name]
            sheet.cell(row=1, column=1, value='Median price paid by local authority')
        return path
    return _write
