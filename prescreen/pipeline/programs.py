"""
Program registry — local program rows, mirrored on Altair.

Fill programs are single-bureau clones of the main (template) program, used
to re-query only a bureau a lead was never matched against. They are created
lazily, at most once per bureau per registry instance; the Program row named
'Fill - <B> Only' is the durable cache across runs.
"""
import copy
import logging
from typing import Dict, List, Any, Optional

from prescreen.config import BUREAUS, PROGRAM_STATUSES
from prescreen.models.program import Program
from prescreen.pipeline.base import NotFoundError, ValidationError
from prescreen.services import audit

logger = logging.getLogger('pipeline.programs')

DEFAULT_SCORE_VERSION = 'FICO_CLASSIC'

# Altair accepts these as segment criteria but rejects them as outputs
CRITERIA_ONLY_FIELDS = frozenset({
    'bk_flag', 'bk_flag_c13', 'bk_flag_60mons', 'bk_flag_72mons', 'bk_flag_84mons', 'fc_flag',
})

# Read-only on Altair, or incompatible with priority match mode
STRIPPED_TEMPLATE_FIELDS = ('id', 'created_at', 'updated_at', 'min_bureau_matches', 'credit_score_mode')
READ_ONLY_PROGRAM_FIELDS = ('id', 'created_at', 'updated_at')

DEFAULT_CREDIT_SCORE_CRITERIA = {'min': 500, 'max': 850}


def fill_program_name(bureau: str) -> str:
    return f'Fill - {bureau.upper()} Only'


def program_to_dict(program) -> Dict[str, Any]:
    return {
        'id': program.id,
        'altairProgramId': program.altair_program_id,
        'name': program.name,
        'description': program.description,
        'minScore': program.min_score,
        'maxScore': program.max_score,
        'status': program.status,
        'eqEnabled': program.eq_enabled,
        'tuEnabled': program.tu_enabled,
        'exEnabled': program.ex_enabled,
        'config': program.config or {},
        'isFillProgram': program.is_fill_program,
        'createdAt': program.created_at.isoformat() if program.created_at else None,
        'updatedAt': program.updated_at.isoformat() if program.updated_at else None,
    }


def build_fill_payload(template: Dict[str, Any], bureau: str, template_config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Derive a single-bureau program payload from the template's remote config.

    The template dict is deep-copied and never mutated.
    """
    bureau_upper = bureau.upper()
    score_version = _score_version(template_config, bureau)

    payload = copy.deepcopy(template)
    payload.update({
        'name': fill_program_name(bureau),
        'description': f'Single-bureau fill program: {bureau_upper} only',
        # Altair: 'priority' is the match mode for one-bureau programs
        'match_mode': 'priority',
        'bureau_priority': {'bureau_1': bureau_upper, 'bureau_2': None, 'bureau_3': None},
    })
    for b in BUREAUS:
        payload[f'{b}_enabled'] = b == bureau
        payload[f'{b}_credit_score_version'] = score_version if b == bureau else None

    for key in STRIPPED_TEMPLATE_FIELDS:
        payload.pop(key, None)

    desired_outputs = template_config.get('outputs')
    for segment in payload.get('segments') or []:
        criteria = segment.get('criteria')
        if isinstance(criteria, dict):
            for b in BUREAUS:
                if b != bureau:
                    criteria.pop(b, None)
            target = criteria.get(bureau) or {}
            if not target.get('credit_score'):
                criteria[bureau] = {**target, 'credit_score': dict(DEFAULT_CREDIT_SCORE_CRITERIA)}

        outputs = segment.get('outputs')
        if isinstance(outputs, dict):
            for b in BUREAUS:
                if b != bureau:
                    outputs.pop(b, None)
            if not outputs.get(bureau) and desired_outputs:
                outputs[bureau] = {f: True for f in desired_outputs if f not in CRITERIA_ONLY_FIELDS}

    return payload


def build_update_payload(remote: Dict[str, Any], changes: Dict[str, Any],
                         local_config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merge local program changes into the full remote program definition.

    Every enabled bureau gets segment criteria (copied from another bureau
    when missing) and outputs (the local output list when set, otherwise
    copied from another bureau). The remote dict is never mutated.
    """
    payload = copy.deepcopy(remote)
    if changes.get('name'):
        payload['name'] = changes['name']
    for b in BUREAUS:
        if changes.get(f'{b}_enabled') is not None:
            payload[f'{b}_enabled'] = bool(changes[f'{b}_enabled'])
        version = changes.get(f'{b}_score_version') or local_config.get(f'{b}_score_version')
        if version:
            payload[f'{b}_credit_score_version'] = version
    for key in READ_ONLY_PROGRAM_FIELDS:
        payload.pop(key, None)

    desired_outputs = [f for f in (local_config.get('outputs') or []) if f not in CRITERIA_ONLY_FIELDS]
    for segment in payload.get('segments') or []:
        for b in BUREAUS:
            if not payload.get(f'{b}_enabled'):
                continue
            criteria = segment.get('criteria') or {}
            if not criteria.get(b):
                source = criteria.get('eq') or criteria.get('tu') or criteria.get('ex')
                if source:
                    criteria[b] = dict(source)
                    segment['criteria'] = criteria

            outputs = segment.get('outputs') or {}
            if desired_outputs:
                outputs[b] = {f: True for f in desired_outputs}
                segment['outputs'] = outputs
            elif not outputs.get(b):
                source = outputs.get('eq') or outputs.get('tu') or outputs.get('ex')
                if source:
                    outputs[b] = dict(source)
                    segment['outputs'] = outputs
    return payload


def _score_version(template_config: Dict[str, Any], bureau: str) -> str:
    return (
        template_config.get(f'{bureau}_score_version')
        or template_config.get('eq_score_version')
        or DEFAULT_SCORE_VERSION
    )


class ProgramRegistry:
    """
    One registry per invocation. Fill-program lookups are memoized on the
    instance so a run creates at most one clone per bureau.
    """

    def __init__(self, repos, client):
        self.repos = repos
        self.client = client
        self._fill_programs: Dict[str, Optional[Program]] = {}

    # ── Fill programs ─────────────────────────────────────────────────

    def get_or_create_fill_program(self, bureau: str) -> Optional[Program]:
        """Single-bureau program with a remote id, or None if one can't be had right now."""
        if bureau not in BUREAUS:
            raise ValidationError(f'Unknown bureau: {bureau}')
        if bureau in self._fill_programs:
            return self._fill_programs[bureau]

        program = self._resolve_fill_program(bureau)
        self._fill_programs[bureau] = program
        return program

    def _resolve_fill_program(self, bureau):
        name = fill_program_name(bureau)
        existing = self.repos.programs.find_active_by_name(name)
        if existing is not None and existing.altair_program_id:
            return existing

        template = self.repos.programs.find_template()
        if template is None or not template.altair_program_id:
            logger.error("No main program with an Altair id to clone for %s", bureau)
            return None

        fetched = self.client.get_program(template.altair_program_id)
        if not fetched.get('success') or not fetched.get('program'):
            logger.error("Failed to fetch template program %s: %s",
                         template.altair_program_id, fetched.get('error'))
            return None

        template_config = template.config or {}
        payload = build_fill_payload(fetched['program'], bureau, template_config)

        logger.info("Creating %s fill program on Altair from template %s",
                    bureau.upper(), template.altair_program_id)
        created = self.client.create_program(payload)
        remote_id = (created.get('program') or {}).get('id') if created.get('success') else None
        if remote_id is None:
            logger.error("Failed to create %s fill program: %s", bureau, created.get('error'))

        fill_config = {
            'single_bureau': bureau,
            'is_fill_program': True,
            'outputs': template_config.get('outputs'),
            f'{bureau}_score_version': _score_version(template_config, bureau),
        }

        if existing is not None:
            existing.altair_program_id = remote_id
            existing.config = fill_config
            program = self.repos.programs.save(existing)
        else:
            program = self.repos.programs.add(Program(
                altair_program_id=remote_id,
                name=name,
                description=f'Single-bureau fill program: {bureau.upper()} only',
                min_score=300,
                max_score=850,
                eq_enabled=bureau == 'eq',
                tu_enabled=bureau == 'tu',
                ex_enabled=bureau == 'ex',
                config=fill_config,
                status='active',
            ))

        return program if program.altair_program_id else None

    # ── Admin program management ─────────────────────────────────────

    def list_programs(self, status: Optional[str] = None) -> List[Program]:
        return self.repos.programs.list(status=status)

    def create_program(self, name, description=None, min_score=None, max_score=None,
                       eq_enabled=None, tu_enabled=None, ex_enabled=None,
                       score_versions=None, filter_criteria=None, actor=None):
        """
        Create a program on Altair, then store it locally.

        The local row is stored even when Altair rejects the program; it then
        has no remote id and submissions to it run in manual mode.
        Returns (program, upstream_result).
        """
        if not name or not str(name).strip():
            raise ValidationError('Program name is required')

        min_score = 500 if min_score is None else int(min_score)
        max_score = 850 if max_score is None else int(max_score)
        enabled = {
            'eq': True if eq_enabled is None else bool(eq_enabled),
            'tu': True if tu_enabled is None else bool(tu_enabled),
            'ex': False if ex_enabled is None else bool(ex_enabled),
        }
        score_versions = score_versions or {}
        versions = {b: score_versions.get(b) or DEFAULT_SCORE_VERSION for b in BUREAUS}

        upstream_payload = {
            'name': name,
            'description': description,
            'min_score': min_score,
            'max_score': max_score,
        }
        for b in BUREAUS:
            upstream_payload[f'{b}_enabled'] = enabled[b]
            upstream_payload[f'{b}_score_version'] = versions[b]

        upstream = self.client.create_program(upstream_payload)
        remote_id = (upstream.get('program') or {}).get('id') if upstream.get('success') else None
        if remote_id is None:
            logger.warning("Program '%s' stored without Altair id: %s", name, upstream.get('error'))

        config = dict(filter_criteria or {})
        config.update({f'{b}_score_version': versions[b] for b in BUREAUS})

        program = self.repos.programs.add(Program(
            altair_program_id=remote_id,
            name=name,
            description=description or None,
            min_score=min_score,
            max_score=max_score,
            eq_enabled=enabled['eq'],
            tu_enabled=enabled['tu'],
            ex_enabled=enabled['ex'],
            config=config,
            status='active',
            created_by=actor.label if actor else None,
        ))

        audit.record_action(
            self.repos.audit, 'create_program', actor=actor,
            details={
                'programId': program.id,
                'altairProgramId': program.altair_program_id,
                'altairSuccess': bool(upstream.get('success')),
                'altairError': upstream.get('error'),
            },
        )
        return program, upstream

    def get_program(self, program_id) -> Program:
        program = self.repos.programs.get(program_id)
        if program is None:
            raise NotFoundError('Program not found')
        return program

    def update_program(self, program_id, changes: Dict[str, Any], actor=None):
        """
        Apply changes locally and, for a mirrored program, on Altair.

        changes keys: name, description, min_score, max_score, <b>_enabled,
        <b>_score_version, status, filter_criteria. Keys left out (or None)
        keep their current value. An Altair failure never blocks the local
        update; it is returned as altair_error. Returns (program, altair_error).
        """
        program = self.get_program(program_id)
        changes = {k: v for k, v in changes.items() if v is not None}

        status = changes.get('status')
        if status is not None and status not in PROGRAM_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(PROGRAM_STATUSES)}")
        if 'name' in changes and not str(changes['name']).strip():
            raise ValidationError('Program name cannot be empty')
        if 'filter_criteria' in changes and not isinstance(changes['filter_criteria'], dict):
            raise ValidationError('filterCriteria must be an object')
        for key in ('min_score', 'max_score'):
            if key in changes:
                try:
                    changes[key] = int(changes[key])
                except (TypeError, ValueError):
                    raise ValidationError(f'{key} must be an integer')

        existing_config = dict(program.config or {})
        altair_error = None
        if program.altair_program_id:
            altair_error = self._push_update(program, changes, existing_config)

        for key in ('name', 'description', 'min_score', 'max_score', 'status'):
            if key in changes:
                setattr(program, key, changes[key])
        for b in BUREAUS:
            if f'{b}_enabled' in changes:
                setattr(program, f'{b}_enabled', bool(changes[f'{b}_enabled']))

        new_versions = {b: changes[f'{b}_score_version'] for b in BUREAUS if f'{b}_score_version' in changes}
        if 'filter_criteria' in changes or new_versions:
            base = dict(changes['filter_criteria']) if 'filter_criteria' in changes else existing_config
            config = dict(base)
            for b in BUREAUS:
                config[f'{b}_score_version'] = (
                    new_versions.get(b) or existing_config.get(f'{b}_score_version') or DEFAULT_SCORE_VERSION
                )
            program.config = config

        program = self.repos.programs.save(program)
        audit.record_action(
            self.repos.audit, 'update_program', actor=actor,
            details={'programId': program.id, 'changes': sorted(changes), 'altairError': altair_error},
        )
        if altair_error:
            logger.warning("Program %s updated locally, Altair update failed: %s", program.id, altair_error)
        return program, altair_error

    def _push_update(self, program, changes, local_config) -> Optional[str]:
        fetched = self.client.get_program(program.altair_program_id)
        if not fetched.get('success') or not fetched.get('program'):
            return fetched.get('error') or 'Failed to fetch current program from Altair'
        payload = build_update_payload(fetched['program'], changes, local_config)
        logger.info("Updating program %s on Altair", program.altair_program_id)
        result = self.client.update_program(program.altair_program_id, payload)
        return None if result.get('success') else (result.get('error') or 'Altair update failed')

    def deactivate_program(self, program_id, actor=None) -> Program:
        """Soft delete: the row stays, submissions to it are refused."""
        program = self.get_program(program_id)
        program.status = 'inactive'
        program = self.repos.programs.save(program)
        audit.record_action(self.repos.audit, 'deactivate_program', actor=actor,
                            details={'programId': program.id})
        return program
