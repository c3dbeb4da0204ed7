"""ledger guards: append-only transactions, balances backed by ledger rows

Revision ID: 0002_transactions_append_only
Revises: 0001_initial
Create Date: 2026-10-19

Two database-side checks behind the service's row locks:

* `transactions` rejects UPDATE and DELETE.
* at commit, every account whose balance was written must hold exactly the
  sum of its snapshot deltas plus the exchange proceeds paid to it. A raw
  `UPDATE accounts SET balance = ...` without matching transaction rows fails
  the commit.
"""

from alembic import op


revision = "0002_transactions_append_only"
down_revision = "0001_initial"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE OR REPLACE FUNCTION reject_transaction_rewrite()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            RAISE EXCEPTION 'transaction % is immutable (% rejected)', OLD.transaction_id, TG_OP
                USING ERRCODE = 'integrity_constraint_violation';
        END;
        $$;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_transactions_append_only
        BEFORE UPDATE OR DELETE ON transactions
        FOR EACH ROW
        EXECUTE FUNCTION reject_transaction_rewrite();
        """
    )
    op.execute(
        """
        CREATE OR REPLACE FUNCTION check_account_balance_matches_ledger()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        DECLARE
            current_balance integer;
            derived integer;
        BEGIN
            SELECT balance INTO current_balance FROM accounts WHERE account_id = NEW.account_id;
            SELECT
                COALESCE((SELECT SUM(balance_after - balance_before)
                          FROM transactions WHERE account_id = NEW.account_id), 0)
              + COALESCE((SELECT SUM(amount)
                          FROM transactions WHERE type = 'exchange' AND to_account_id = NEW.account_id), 0)
            INTO derived;
            IF current_balance IS DISTINCT FROM derived THEN
                RAISE EXCEPTION 'account % balance % does not match ledger total %',
                    NEW.account_id, current_balance, derived
                    USING ERRCODE = 'integrity_constraint_violation';
            END IF;
            RETURN NULL;
        END;
        $$;
        """
    )
    op.execute(
        """
        CREATE CONSTRAINT TRIGGER trg_accounts_balance_matches_ledger
        AFTER INSERT OR UPDATE OF balance ON accounts
        DEFERRABLE INITIALLY DEFERRED
        FOR EACH ROW
        EXECUTE FUNCTION check_account_balance_matches_ledger();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_accounts_balance_matches_ledger ON accounts;")
    op.execute("DROP FUNCTION IF EXISTS check_account_balance_matches_ledger();")
    op.execute("DROP TRIGGER IF EXISTS trg_transactions_append_only ON transactions;")
    op.execute("DROP FUNCTION IF EXISTS reject_transaction_rewrite();")
