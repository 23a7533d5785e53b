"""
Seed Catalog Loader - Loads pricing models, scopes and rules from CSV files.

Expected files in the seed directory:
- pricing_models.csv: name, model_type, config (JSON), description, is_system
- pricing_scopes.csv: model_name, scope_type, scope_id, deployment_type, is_override
- pricing_rules.csv:  model_name, name, rule_type, priority, active, conditions (JSON),
                      actions (JSON), effective_from, effective_to, description

Only pricing_models.csv is required. Everything is validated before the
first insert, and inserts go through the services so they are audited.
"""
import hashlib
import json
from datetime import datetime
from pathlib import Path
from typing import Optional

import pandas as pd
import structlog

from ..engine.models import ActorRole, DeploymentType, ModelType, ScopeType, build_config, parse_enum
from ..errors import PricingError, ValidationError
from ..rules.compile_rules import compile_rules, parse_bool, parse_optional_str

logger = structlog.get_logger(__name__)

MODELS_FILE = 'pricing_models.csv'
SCOPES_FILE = 'pricing_scopes.csv'
RULES_FILE = 'pricing_rules.csv'

MODEL_COLUMNS = ['name', 'model_type', 'config']
SCOPE_COLUMNS = ['model_name', 'scope_type']


def get_file_hash(path: Path) -> str:
    """Get SHA256 hash of a file."""
    if not path.exists():
        return ""
    with open(path, 'rb') as f:
        return hashlib.sha256(f.read()).hexdigest()[:12]


def seed_error(file_name: str, line_num: int, error: PricingError) -> ValidationError:
    return ValidationError(f"{file_name} line {line_num}: {error.message}", code="invalid_seed_file")


def read_seed_csv(path: Path, required: list[str]) -> pd.DataFrame:
    """Read a seed CSV as strings, with blanks kept as empty strings."""
    df = pd.read_csv(path, dtype=str, keep_default_na=False)
    df.columns = [c.strip() for c in df.columns]
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise ValidationError(
            f"{path.name} is missing columns: {', '.join(missing)}",
            code="invalid_seed_file",
        )
    for col in df.columns:
        df[col] = df[col].str.strip()
    return df


def load_seed_catalog(
    services,
    directory: Path,
    tenant_id: str,
    actor_id: str = "system",
    actor_role: str = ActorRole.SUPER_ADMIN.value,
) -> dict:
    """
    Load the seed catalog for one tenant.

    Args:
        services: PricingServices container
        directory: Directory holding the seed CSV files
        tenant_id: Tenant the catalog is created for
        actor_id: Actor recorded in the audit trail
        actor_role: Role recorded in the audit trail

    Returns:
        Load report dictionary
    """
    directory = Path(directory)
    models_path = directory / MODELS_FILE
    scopes_path = directory / SCOPES_FILE
    rules_path = directory / RULES_FILE

    if not models_path.exists():
        raise FileNotFoundError(f"{MODELS_FILE} not found in {directory}")

    report = {
        "timestamp": datetime.now().isoformat(),
        "tenant_id": tenant_id,
        "input_files": {},
        "metrics": {},
    }
    for path in (models_path, scopes_path, rules_path):
        if path.exists():
            report["input_files"][path.name] = {"path": str(path), "hash": get_file_hash(path)}

    # Validate everything up front
    models_df = read_seed_csv(models_path, MODEL_COLUMNS)
    model_rows = []
    for line_num, row in enumerate(models_df.to_dict('records'), start=2):
        try:
            config = json.loads(row['config'] or '{}')
        except json.JSONDecodeError as e:
            raise ValidationError(f"{MODELS_FILE} line {line_num}: config is not valid JSON ({e})",
                                  code="invalid_seed_file") from e
        if not isinstance(config, dict):
            raise ValidationError(f"{MODELS_FILE} line {line_num}: config must be a JSON object",
                                  code="invalid_seed_file")
        try:
            build_config(parse_enum(ModelType, row['model_type'], 'model type'), config)
        except PricingError as e:
            raise seed_error(MODELS_FILE, line_num, e) from e
        model_rows.append((row, config))

    known_models = {row['name'] for row, _ in model_rows}

    scope_rows = []
    if scopes_path.exists():
        scope_rows = read_seed_csv(scopes_path, SCOPE_COLUMNS).to_dict('records')
        for line_num, row in enumerate(scope_rows, start=2):
            try:
                parse_enum(ScopeType, row['scope_type'], 'scope type')
                if parse_optional_str(row.get('deployment_type')):
                    parse_enum(DeploymentType, row['deployment_type'], 'deployment type')
            except PricingError as e:
                raise seed_error(SCOPES_FILE, line_num, e) from e
        unknown = sorted({r['model_name'] for r in scope_rows} - known_models)
        if unknown:
            raise ValidationError(f"{SCOPES_FILE} references unknown models: {', '.join(unknown)}",
                                  code="invalid_seed_file")

    compiled = []
    if rules_path.exists():
        rule_rows = pd.read_csv(rules_path, dtype=str, keep_default_na=False).to_dict('records')
        success, compiled, errors = compile_rules(rule_rows)
        if not success:
            raise ValidationError(f"{RULES_FILE} has {len(errors)} invalid row(s)",
                                  code="invalid_seed_file", details={"errors": errors})
        unknown = sorted({r.model_name for r in compiled} - known_models)
        if unknown:
            raise ValidationError(f"{RULES_FILE} references unknown models: {', '.join(unknown)}",
                                  code="invalid_seed_file")

    # Insert
    model_ids = {}
    for row, config in model_rows:
        model = services.models.create_pricing_model(
            tenant_id,
            row['name'],
            row['model_type'],
            config,
            actor_id,
            actor_role,
            description=parse_optional_str(row.get('description')),
            is_system=parse_bool(row.get('is_system') or 'false'),
        )
        model_ids[row['name']] = model.id

    for row in scope_rows:
        services.scopes.create_scope(
            tenant_id,
            model_ids[row['model_name']],
            row['scope_type'],
            scope_id=parse_optional_str(row.get('scope_id')),
            deployment_type=parse_optional_str(row.get('deployment_type')),
            is_override=parse_bool(row.get('is_override') or 'false'),
            created_by=actor_id,
            created_by_role=actor_role,
        )

    for rule in compiled:
        services.models.create_rule(
            tenant_id,
            model_ids[rule.model_name],
            rule.name,
            rule.rule_type,
            rule.conditions,
            rule.actions,
            description=rule.description,
            priority=rule.priority,
            effective_from=rule.effective_from,
            effective_to=rule.effective_to,
            is_active=rule.active,
            created_by=actor_id,
            created_by_role=actor_role,
        )

    report["metrics"] = {
        "models": len(model_rows),
        "scopes": len(scope_rows),
        "rules": len(compiled),
    }
    report["model_ids"] = model_ids
    logger.info("seed_catalog_loaded", tenant_id=tenant_id, directory=str(directory), **report["metrics"])
    return report


def seed_from_settings(services, tenant_id: str, directory: Optional[Path] = None) -> dict:
    """Load the catalog from ``directory`` or the configured seed dir."""
    return load_seed_catalog(services, directory or services.settings.seed_dir, tenant_id)
