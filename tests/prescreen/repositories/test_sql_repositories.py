"""Tests for prescreen.repositories.sql — queries the orchestrators rely on."""
from datetime import datetime

from prescreen.models.batch import Batch
from prescreen.models.lead import Lead
from prescreen.models.program import Program


def _lead(repos, program, first, last, **fields):
    fields.setdefault('match_status', 'matched')
    fields.setdefault('tier', 'pending')
    return repos.leads.add(Lead(program_id=program.id, first_name=first, last_name=last, **fields))


class TestProgramRepository:

    def test_find_active_by_name(self, repos):
        repos.programs.add(Program(name='Fill - TU Only', status='inactive'))
        active = repos.programs.add(Program(name='Fill - TU Only', status='active'))
        assert repos.programs.find_active_by_name('Fill - TU Only').id == active.id
        assert repos.programs.find_active_by_name('Nope') is None

    def test_find_template_skips_programs_without_remote_id(self, repos):
        repos.programs.add(Program(name='Local only', status='active'))
        remote = repos.programs.add(Program(name='Mirrored', status='active', altair_program_id=77))
        assert repos.programs.find_template().id == remote.id

    def test_list_by_status(self, repos):
        repos.programs.add(Program(name='A', status='active'))
        repos.programs.add(Program(name='B', status='inactive'))
        assert [p.name for p in repos.programs.list(status='inactive')] == ['B']
        assert len(repos.programs.list()) == 2


class TestLeadRepository:

    def test_find_scored_by_name_case_insensitive(self, repos, main_program):
        _lead(repos, main_program, 'Jane', 'Doe', tier='pending')
        scored = _lead(repos, main_program, 'Jane', 'Doe', tier='tier_1', middle_score=700)

        found = repos.leads.find_scored_by_name(main_program.id, ' jane', 'DOE ')
        assert found.id == scored.id

    def test_filtered_lead_is_not_scored(self, repos, main_program):
        _lead(repos, main_program, 'Jane', 'Doe', tier='filtered', match_status='no_match')
        assert repos.leads.find_scored_by_name(main_program.id, 'Jane', 'Doe') is None

    def test_below_tier_counts_as_scored(self, repos, main_program):
        _lead(repos, main_program, 'Low', 'Score', tier='below')
        assert repos.leads.find_scored_by_name(main_program.id, 'Low', 'Score') is not None

    def test_find_stale_by_names(self, repos, main_program):
        batch = repos.batches.add(Batch(program_id=main_program.id, name='b'))
        stale = _lead(repos, main_program, 'Jane', 'Doe', match_status='api_error')
        _lead(repos, main_program, 'Jane', 'Doe', match_status='api_error', batch_id=batch.id)
        _lead(repos, main_program, 'Jane', 'Doe', match_status='matched')
        _lead(repos, main_program, 'Other', 'Person', match_status='pending')

        found = repos.leads.find_stale_by_names(main_program.id, [('JANE', 'doe')],
                                                exclude_batch_id=batch.id)
        assert [l.id for l in found] == [stale.id]
        assert repos.leads.find_stale_by_names(main_program.id, []) == []

    def test_list_matched_with_pii(self, repos, main_program):
        keep = _lead(repos, main_program, 'A', 'A', ssn_encrypted='x', dob_encrypted='y')
        _lead(repos, main_program, 'B', 'B', ssn_encrypted='x', dob_encrypted=None)
        _lead(repos, main_program, 'C', 'C', ssn_encrypted='x', dob_encrypted='y', match_status='no_match')
        assert [l.id for l in repos.leads.list_matched_with_pii()] == [keep.id]

    def test_list_by_batch_ordered_by_input_id(self, repos, main_program):
        batch = repos.batches.add(Batch(program_id=main_program.id, name='b'))
        second = _lead(repos, main_program, 'B', 'B', batch_id=batch.id, input_id=2, match_status='api_error')
        first = _lead(repos, main_program, 'A', 'A', batch_id=batch.id, input_id=1, match_status='api_error')
        _lead(repos, main_program, 'C', 'C', batch_id=batch.id, input_id=3)

        errors = repos.leads.list_by_batch(batch.id, match_status='api_error')
        assert [l.id for l in errors] == [first.id, second.id]
        assert len(repos.leads.list_by_batch(batch.id)) == 3

    def test_tier_counts(self, repos, main_program):
        _lead(repos, main_program, 'A', 'A', tier='tier_1')
        _lead(repos, main_program, 'B', 'B', tier='tier_1')
        _lead(repos, main_program, 'C', 'C', tier='filtered')
        assert repos.leads.tier_counts() == {'tier_1': 2, 'filtered': 1}

    def test_get_after_delete_many_returns_none(self, repos, main_program):
        lead = _lead(repos, main_program, 'Gone', 'Soon')
        assert repos.leads.get(lead.id) is lead

        assert repos.leads.delete_many([lead.id]) == 1
        assert repos.leads.get(lead.id) is None
        assert repos.leads.delete_many([]) == 0


class TestResultRepository:

    def test_upsert_replaces_existing_row(self, repos, main_program):
        lead = _lead(repos, main_program, 'A', 'A')
        repos.results.upsert(lead.id, 'tu', credit_score=None, is_hit=False)
        repos.results.upsert(lead.id, 'tu', credit_score=650, is_hit=True, raw_output={'credit_score': 650})

        rows = repos.results.list_for_lead(lead.id)
        assert len(rows) == 1
        assert (rows[0].credit_score, rows[0].is_hit) == (650, True)
        assert rows[0].raw_output == {'credit_score': 650}

    def test_list_for_leads_groups_and_includes_empty(self, repos, main_program):
        a = _lead(repos, main_program, 'A', 'A')
        b = _lead(repos, main_program, 'B', 'B')
        repos.results.upsert(a.id, 'eq', 600, True)
        repos.results.upsert(a.id, 'tu', 610, True)

        grouped = repos.results.list_for_leads([a.id, b.id])
        assert [r.bureau for r in grouped[a.id]] == ['eq', 'tu']
        assert grouped[b.id] == []

    def test_delete_for_leads_keeps_audit_rows(self, repos, main_program):
        from prescreen.services.audit import record_action
        lead = _lead(repos, main_program, 'A', 'A')
        repos.results.upsert(lead.id, 'eq', 600, True)
        entry = record_action(repos.audit, 'submit', lead_id=lead.id)

        assert repos.results.delete_for_leads([lead.id]) == 1
        assert repos.leads.delete_many([lead.id]) == 1

        repos.audit.session.expire_all()
        entries, total = repos.audit.list()
        assert total == 1
        assert entries[0].id == entry.id
        assert entries[0].lead_id is None
        assert repos.leads.get(lead.id) is None


class TestBatchRepository:

    def test_list_recent_newest_first(self, repos, main_program):
        other = repos.programs.add(Program(name='Other', status='active'))
        first = repos.batches.add(Batch(program_id=main_program.id, name='first'))
        second = repos.batches.add(Batch(program_id=main_program.id, name='second'))
        repos.batches.add(Batch(program_id=other.id, name='elsewhere'))

        recent = repos.batches.list_recent(limit=10, program_id=main_program.id)
        assert [b.id for b in recent] == [second.id, first.id]
        assert len(repos.batches.list_recent(limit=1)) == 1

    def test_totals(self, repos, main_program):
        assert repos.batches.totals() == {
            'totalBatches': 0, 'totalRecords': 0, 'qualifiedRecords': 0, 'failedRecords': 0,
        }
        repos.batches.add(Batch(program_id=main_program.id, name='a', total_records=10,
                                qualified_count=6, failed_count=4))
        repos.batches.add(Batch(program_id=main_program.id, name='b', total_records=3,
                                qualified_count=1, failed_count=2))
        assert repos.batches.totals() == {
            'totalBatches': 2, 'totalRecords': 13, 'qualifiedRecords': 7, 'failedRecords': 6,
        }

    def test_usage_counts(self, repos, main_program):
        batch = repos.batches.add(Batch(program_id=main_program.id, name='b'))
        _lead(repos, main_program, 'A', 'A', batch_id=batch.id)
        _lead(repos, main_program, 'B', 'B')
        empty = repos.programs.add(Program(name='Empty', status='active'))

        assert repos.programs.usage_counts(main_program.id) == {'leads': 2, 'batches': 1}
        assert repos.programs.usage_counts(empty.id) == {'leads': 0, 'batches': 0}


class TestLeadSearch:

    def test_text_matches_names_and_last_four(self, repos, main_program):
        jane = _lead(repos, main_program, 'Jane', 'Doe', ssn_last_four='1111')
        _lead(repos, main_program, 'Bob', 'Smith', ssn_last_four='2222')

        assert [l.id for l in repos.leads.search({'search': 'JAN'})[0]] == [jane.id]
        assert [l.id for l in repos.leads.search({'search': '1111'})[0]] == [jane.id]
        assert repos.leads.search({'search': 'nobody'}) == ([], 0)

    def test_unqualified_tier(self, repos, main_program):
        below = _lead(repos, main_program, 'A', 'A', tier='below')
        filtered = _lead(repos, main_program, 'B', 'B', tier='filtered', match_status='matched')
        _lead(repos, main_program, 'C', 'C', tier='filtered', match_status='no_match')
        _lead(repos, main_program, 'D', 'D', tier='tier_1')

        items, total = repos.leads.search({'tier': 'unqualified'}, sort_dir='asc')
        assert total == 2
        assert {l.id for l in items} == {below.id, filtered.id}

    def test_tier_and_match_status(self, repos, main_program):
        hit = _lead(repos, main_program, 'A', 'A', tier='filtered', match_status='no_match')
        _lead(repos, main_program, 'B', 'B', tier='filtered', match_status='matched')

        items, _ = repos.leads.search({'tier': 'filtered', 'match_status': 'no_match'})
        assert [l.id for l in items] == [hit.id]

    def test_score_range(self, repos, main_program):
        _lead(repos, main_program, 'A', 'A', middle_score=550)
        mid = _lead(repos, main_program, 'B', 'B', middle_score=650)
        _lead(repos, main_program, 'C', 'C', middle_score=750)
        _lead(repos, main_program, 'D', 'D')

        items, total = repos.leads.search({'min_score': 600, 'max_score': 700})
        assert (total, [l.id for l in items]) == (1, [mid.id])

    def test_lead_ids_take_precedence_over_batch(self, repos, main_program):
        batch = repos.batches.add(Batch(program_id=main_program.id, name='b'))
        _lead(repos, main_program, 'Own', 'Lead', batch_id=batch.id)
        touched = _lead(repos, main_program, 'Touched', 'Lead')

        items, _ = repos.leads.search({'batch_id': batch.id, 'lead_ids': [touched.id]})
        assert [l.id for l in items] == [touched.id]

    def test_program_and_batch(self, repos, main_program):
        other = repos.programs.add(Program(name='Other', status='active'))
        batch = repos.batches.add(Batch(program_id=main_program.id, name='b'))
        in_batch = _lead(repos, main_program, 'A', 'A', batch_id=batch.id)
        _lead(repos, main_program, 'B', 'B')
        _lead(repos, other, 'C', 'C')

        assert repos.leads.search({'program_id': other.id})[1] == 1
        assert [l.id for l in repos.leads.search({'batch_id': batch.id})[0]] == [in_batch.id]

    def test_middle_score_sort_puts_unscored_last(self, repos, main_program):
        unscored = _lead(repos, main_program, 'A', 'A')
        low = _lead(repos, main_program, 'B', 'B', middle_score=600)
        high = _lead(repos, main_program, 'C', 'C', middle_score=700)

        desc, _ = repos.leads.search(sort_by='middle_score', sort_dir='desc')
        asc, _ = repos.leads.search(sort_by='middle_score', sort_dir='asc')
        assert [l.id for l in desc] == [high.id, low.id, unscored.id]
        assert [l.id for l in asc] == [low.id, high.id, unscored.id]

    def test_tier_sort_ascending_puts_best_first(self, repos, main_program):
        no_match = _lead(repos, main_program, 'A', 'A', tier='filtered', match_status='no_match')
        tier_3 = _lead(repos, main_program, 'B', 'B', tier='tier_3')
        tier_1 = _lead(repos, main_program, 'C', 'C', tier='tier_1')
        unqualified = _lead(repos, main_program, 'D', 'D', tier='filtered', match_status='matched')

        items, _ = repos.leads.search(sort_by='tier', sort_dir='asc')
        assert [l.id for l in items] == [tier_1.id, tier_3.id, unqualified.id, no_match.id]

    def test_pagination(self, repos, main_program):
        leads = [_lead(repos, main_program, f'N{i}', 'X') for i in range(5)]

        page, total = repos.leads.search(offset=2, limit=2, sort_by='first_name', sort_dir='asc')
        assert total == 5
        assert [l.id for l in page] == [leads[2].id, leads[3].id]


class TestUsageQueries:

    def test_monthly_usage_counts_leads_and_pulls(self, repos, main_program):
        sept = _lead(repos, main_program, 'A', 'A', created_at=datetime(2026, 9, 3))
        octo = _lead(repos, main_program, 'B', 'B', created_at=datetime(2026, 10, 1))
        _lead(repos, main_program, 'C', 'C', created_at=datetime(2026, 10, 15))
        repos.results.upsert(sept.id, 'eq', 600, True)
        repos.results.upsert(octo.id, 'eq', 610, True)
        repos.results.upsert(octo.id, 'tu', 620, True)

        assert repos.leads.monthly_usage() == [
            {'month': '2026-10', 'leads': 2, 'pulls': 2},
            {'month': '2026-09', 'leads': 1, 'pulls': 1},
        ]
        assert repos.leads.monthly_usage(months=1) == [{'month': '2026-10', 'leads': 2, 'pulls': 2}]

    def test_bureau_counts(self, repos, main_program):
        a = _lead(repos, main_program, 'A', 'A')
        b = _lead(repos, main_program, 'B', 'B')
        repos.results.upsert(a.id, 'eq', 600, True)
        repos.results.upsert(b.id, 'eq', None, False)
        repos.results.upsert(b.id, 'ex', 640, True)

        assert repos.results.bureau_counts() == {'eq': 2, 'ex': 1}
