"""
Hypothesis strategies for save records (schemas/save.yaml field set).
"""

from hypothesis import strategies as st

u16_values = st.integers(min_value=0, max_value=65535)
u32_values = st.integers(min_value=0, max_value=2**32 - 1)
f64_values = st.floats(allow_nan=False)
versions = st.integers(min_value=0, max_value=70)

BUILDING_FLOATS = [
    'quantity_total', 'quantity_max', 'production_total',
    'production_reincarnation', 'production_lifetime', 'cost_base',
    'max_unique_quantity', 'max_unique_quantity_total', 'max_unique_production_total',
    'max_unique_production_reincarnation', 'max_unique_production_lifetime',
    'max_unique_cost_base',
]

buildings = st.fixed_dictionaries(dict(
    {'id': u32_values, 'quantity': u32_values},
    **{name: f64_values for name in BUILDING_FLOATS}
))

upgrades = st.fixed_dictionaries({
    'id': u32_values,
    'unlocked': st.booleans(),
    'active': st.booleans(),
    'seen': st.booleans(),
    'rng_state': u32_values,
})


@st.composite
def save_records(draw, max_items=4):
    """Save records with every field populated; counts are left to the encoder."""
    return {
        'save_version': draw(versions),
        'reincarnation': draw(u16_values),
        'egg_rng_state': draw(u32_values),
        'egg_stack_size': draw(u16_values),
        'halloween_monsters': draw(u32_values),
        'season_n': draw(u16_values),
        'breath_effects': draw(u32_values),
        'building_offset': draw(u32_values),
        'upgrade_offset': draw(u32_values),
        'buildings': draw(st.lists(buildings, max_size=max_items)),
        'upgrades': draw(st.lists(upgrades, max_size=max_items)),
    }
