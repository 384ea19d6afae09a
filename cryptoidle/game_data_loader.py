"""Game data loader for loading JSON definition tables."""
import json
from pathlib import Path

DEFINITION_FILES = ('resources', 'buildings', 'upgrades', 'unlocks', 'economic_rules')

class GameDataLoader:
    """Loads and caches game data from JSON files.

    The tables are read once and never mutated afterwards; per-session state
    is always built from deep copies (see ``cryptoidle.state.new_state``).
    """

    def __init__(self, data_dir=None):
        """Initialize the data loader."""
        if data_dir is None:
            # Assume we're running from project root
            self.data_dir = Path(__file__).parent.parent / 'game_data'
        else:
            self.data_dir = Path(data_dir)

        self._resources = None
        self._buildings = None
        self._upgrades = None
        self._unlocks = None
        self._economic_rules = None

    def _read(self, name, required=True):
        """Read one JSON table from the data directory."""
        file_path = self.data_dir / f'{name}.json'
        if not file_path.exists():
            if required:
                raise FileNotFoundError(f"Game data file missing: {file_path}")
            return {}
        with open(file_path, 'r') as f:
            try:
                return json.load(f)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid JSON in {file_path}: {e}") from e

    def load_resources(self):
        """Load resource definitions keyed by resource id."""
        if self._resources is None:
            data = self._read('resources')
            self._resources = data.get('resources', {})
            for resource_id, resource in self._resources.items():
                resource.setdefault('id', resource_id)
        return self._resources

    def load_buildings(self):
        """Load building definitions keyed by building id."""
        if self._buildings is None:
            data = self._read('buildings')
            self._buildings = data.get('buildings', {})
            for building_id, building in self._buildings.items():
                building.setdefault('id', building_id)
        return self._buildings

    def load_upgrades(self):
        """Load upgrade definitions keyed by upgrade id."""
        if self._upgrades is None:
            data = self._read('upgrades')
            self._upgrades = data.get('upgrades', {})
            for upgrade_id, upgrade in self._upgrades.items():
                upgrade.setdefault('id', upgrade_id)
        return self._upgrades

    def load_unlocks(self):
        """Load the unlockable item registry (a list, in evaluation order)."""
        if self._unlocks is None:
            data = self._read('unlocks')
            self._unlocks = data.get('unlocks', [])
        return self._unlocks

    def load_economic_rules(self):
        """Load economic rules data."""
        if self._economic_rules is None:
            self._economic_rules = self._read('economic_rules', required=False)
        return self._economic_rules

    def get_resource_by_id(self, resource_id):
        """Get resource definition by ID."""
        return self.load_resources().get(resource_id)

    def get_building_by_id(self, building_id):
        """Get building definition by ID."""
        return self.load_buildings().get(building_id)

    def get_upgrade_by_id(self, upgrade_id):
        """Get upgrade definition by ID."""
        return self.load_upgrades().get(upgrade_id)

    def get_mining_params(self):
        """Get mining/exchange parameters from economic rules."""
        rules = self.load_economic_rules()
        return rules.get('mining_params', {})

    def get_specializations(self):
        """Get specialization definitions from economic rules."""
        return self.load_economic_rules().get('specializations', {})

    def get_synergies(self):
        """Get synergy definitions from economic rules."""
        return self.load_economic_rules().get('synergies', {})

    def get_counter_ids(self):
        """Get the gameplay counters every new session starts with."""
        return list(self.load_economic_rules().get('counters', []))

    def validate_data(self):
        """Validate loaded data structure.

        Returns:
            List of human-readable problems; empty when the tables are consistent
        """
        errors = []

        resources = self.load_resources()
        if not resources:
            errors.append("No resources loaded")

        buildings = self.load_buildings()
        if not buildings:
            errors.append("No buildings loaded")

        upgrades = self.load_upgrades()

        # Every priced resource must exist
        for kind, table in (('building', buildings), ('upgrade', upgrades)):
            for item_id, item in table.items():
                for resource_id in item.get('cost', {}):
                    if resource_id not in resources:
                        errors.append(f"{kind} {item_id} costs unknown resource {resource_id}")

        for building_id, building in buildings.items():
            if building.get('cost_multiplier', 1.0) < 1.0:
                errors.append(f"building {building_id} has a cost multiplier below 1")
            conversion = building.get('conversion')
            if conversion and conversion.get('output') not in resources:
                errors.append(f"building {building_id} converts into unknown resource")

        # Registry entries must point at real entities
        tables = {'resource': resources, 'building': buildings, 'upgrade': upgrades}
        item_ids = []
        for item in self.load_unlocks():
            item_id = item.get('id')
            item_ids.append(item_id)
            kind = item.get('kind')
            if kind in tables and item_id not in tables[kind]:
                errors.append(f"unlock entry {item_id} has no matching {kind}")
            elif kind not in tables and kind != 'feature':
                errors.append(f"unlock entry {item_id} has unknown kind {kind}")
        if len(item_ids) != len(set(item_ids)):
            errors.append("Duplicate unlock IDs found")

        return errors

# Global instance
_game_data_loader = None

def get_game_data_loader(data_dir=None):
    """Get or create the global game data loader instance."""
    global _game_data_loader
    if _game_data_loader is None:
        _game_data_loader = GameDataLoader(data_dir)
    return _game_data_loader
