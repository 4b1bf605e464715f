"""ledger_procedures

Revision ID: 7c4f2e8a1b93
Revises: 3e1a9c7b5d20
Create Date: 2026-03-02 18:20:11.402913

Adds the four balance-mutation functions used by services/ledger.py.
Each one locks the profile row, dedups on reference_id and writes its
credit_transactions rows in the caller's transaction.
"""
from collections.abc import Sequence

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '7c4f2e8a1b93'
down_revision: str | None = '3e1a9c7b5d20'
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.execute("""
        CREATE OR REPLACE FUNCTION public.add_subscription_credits(
            target_user_id UUID,
            amount INTEGER,
            ref_id TEXT,
            description TEXT,
            max_balance INTEGER DEFAULT NULL
        )
        RETURNS TABLE(applied BOOLEAN, new_balance INTEGER, granted INTEGER, capped BOOLEAN) AS $$
        DECLARE
            v_balance INTEGER;
            v_grant INTEGER;
        BEGIN
            IF amount <= 0 THEN
                RAISE EXCEPTION 'Grant amount must be positive, got %', amount;
            END IF;

            SELECT p.subscription_credits_balance INTO v_balance
            FROM public.profiles p
            WHERE p.id = target_user_id
            FOR UPDATE;

            IF NOT FOUND THEN
                RAISE EXCEPTION 'Profile % not found', target_user_id;
            END IF;

            -- Same reference already granted: no-op
            IF EXISTS (
                SELECT 1 FROM public.credit_transactions ct
                WHERE ct.user_id = target_user_id
                  AND ct.reference_id = ref_id
                  AND ct.transaction_type = 'subscription'
            ) THEN
                RETURN QUERY SELECT FALSE, v_balance, 0, FALSE;
                RETURN;
            END IF;

            -- Rollover cap is applied against the locked balance
            v_grant := amount;
            IF max_balance IS NOT NULL THEN
                v_grant := LEAST(amount, GREATEST(max_balance - v_balance, 0));
            END IF;

            IF v_grant = 0 THEN
                RETURN QUERY SELECT FALSE, v_balance, 0, TRUE;
                RETURN;
            END IF;

            UPDATE public.profiles p
            SET subscription_credits_balance = p.subscription_credits_balance + v_grant,
                updated_at = NOW()
            WHERE p.id = target_user_id
            RETURNING p.subscription_credits_balance INTO v_balance;

            INSERT INTO public.credit_transactions
                (user_id, amount, transaction_type, credit_pool, reference_id, description)
            VALUES
                (target_user_id, v_grant, 'subscription', 'subscription', ref_id, description);

            RETURN QUERY SELECT TRUE, v_balance, v_grant, v_grant < amount;
        END;
        $$ LANGUAGE plpgsql;
    """)

    op.execute("""
        CREATE OR REPLACE FUNCTION public.add_purchased_credits(
            target_user_id UUID,
            amount INTEGER,
            ref_id TEXT,
            description TEXT,
            transaction_type TEXT DEFAULT 'purchase'
        )
        RETURNS TABLE(applied BOOLEAN, new_balance INTEGER) AS $$
        DECLARE
            v_balance INTEGER;
        BEGIN
            IF amount <= 0 THEN
                RAISE EXCEPTION 'Grant amount must be positive, got %', amount;
            END IF;

            SELECT p.purchased_credits_balance INTO v_balance
            FROM public.profiles p
            WHERE p.id = target_user_id
            FOR UPDATE;

            IF NOT FOUND THEN
                RAISE EXCEPTION 'Profile % not found', target_user_id;
            END IF;

            IF EXISTS (
                SELECT 1 FROM public.credit_transactions ct
                WHERE ct.user_id = target_user_id
                  AND ct.reference_id = ref_id
                  AND ct.transaction_type = add_purchased_credits.transaction_type
            ) THEN
                RETURN QUERY SELECT FALSE, v_balance;
                RETURN;
            END IF;

            UPDATE public.profiles p
            SET purchased_credits_balance = p.purchased_credits_balance + amount,
                updated_at = NOW()
            WHERE p.id = target_user_id
            RETURNING p.purchased_credits_balance INTO v_balance;

            INSERT INTO public.credit_transactions
                (user_id, amount, transaction_type, credit_pool, reference_id, description)
            VALUES
                (target_user_id, amount, add_purchased_credits.transaction_type,
                 'purchased', ref_id, description);

            RETURN QUERY SELECT TRUE, v_balance;
        END;
        $$ LANGUAGE plpgsql;
    """)

    op.execute("""
        CREATE OR REPLACE FUNCTION public.clawback_credits_v2(
            p_target_user_id UUID,
            p_amount INTEGER,
            p_reason TEXT,
            p_ref_id TEXT,
            p_pool TEXT DEFAULT 'auto'
        )
        RETURNS TABLE(
            success BOOLEAN,
            credits_clawed_back INTEGER,
            subscription_clawed INTEGER,
            purchased_clawed INTEGER,
            new_subscription_balance INTEGER,
            new_purchased_balance INTEGER,
            error_message TEXT
        ) AS $$
        DECLARE
            v_sub_balance INTEGER;
            v_pur_balance INTEGER;
            v_sub INTEGER := 0;
            v_pur INTEGER := 0;
        BEGIN
            SELECT p.subscription_credits_balance, p.purchased_credits_balance
            INTO v_sub_balance, v_pur_balance
            FROM public.profiles p
            WHERE p.id = p_target_user_id
            FOR UPDATE;

            IF NOT FOUND THEN
                RETURN QUERY SELECT FALSE, 0, 0, 0, 0, 0, 'Profile not found'::TEXT;
                RETURN;
            END IF;

            IF p_amount IS NULL OR p_amount <= 0 THEN
                RETURN QUERY SELECT FALSE, 0, 0, 0, v_sub_balance, v_pur_balance,
                    'Clawback amount must be positive'::TEXT;
                RETURN;
            END IF;

            IF p_pool NOT IN ('subscription', 'purchased', 'auto') THEN
                RETURN QUERY SELECT FALSE, 0, 0, 0, v_sub_balance, v_pur_balance,
                    format('Invalid pool: %s', p_pool);
                RETURN;
            END IF;

            -- Replay of the same reference returns the original outcome
            IF EXISTS (
                SELECT 1 FROM public.credit_transactions ct
                WHERE ct.user_id = p_target_user_id
                  AND ct.reference_id = p_ref_id
                  AND ct.transaction_type = 'clawback'
            ) THEN
                SELECT
                    COALESCE(SUM(-ct.amount) FILTER (WHERE ct.credit_pool = 'subscription'), 0),
                    COALESCE(SUM(-ct.amount) FILTER (WHERE ct.credit_pool = 'purchased'), 0)
                INTO v_sub, v_pur
                FROM public.credit_transactions ct
                WHERE ct.user_id = p_target_user_id
                  AND ct.reference_id = p_ref_id
                  AND ct.transaction_type = 'clawback';

                RETURN QUERY SELECT TRUE, v_sub + v_pur, v_sub, v_pur,
                    v_sub_balance, v_pur_balance, NULL::TEXT;
                RETURN;
            END IF;

            IF p_pool = 'subscription' THEN
                v_sub := LEAST(p_amount, v_sub_balance);
            ELSIF p_pool = 'purchased' THEN
                v_pur := LEAST(p_amount, v_pur_balance);
            ELSE
                -- Subscription pool first, then purchased
                v_sub := LEAST(p_amount, v_sub_balance);
                v_pur := LEAST(p_amount - v_sub, v_pur_balance);
            END IF;

            UPDATE public.profiles p
            SET subscription_credits_balance = p.subscription_credits_balance - v_sub,
                purchased_credits_balance = p.purchased_credits_balance - v_pur,
                updated_at = NOW()
            WHERE p.id = p_target_user_id
            RETURNING p.subscription_credits_balance, p.purchased_credits_balance
            INTO v_sub_balance, v_pur_balance;

            IF v_sub > 0 THEN
                INSERT INTO public.credit_transactions
                    (user_id, amount, transaction_type, credit_pool, reference_id, description)
                VALUES (p_target_user_id, -v_sub, 'clawback', 'subscription', p_ref_id, p_reason);
            END IF;
            IF v_pur > 0 THEN
                INSERT INTO public.credit_transactions
                    (user_id, amount, transaction_type, credit_pool, reference_id, description)
                VALUES (p_target_user_id, -v_pur, 'clawback', 'purchased', p_ref_id, p_reason);
            END IF;
            -- Nothing to take: record the reference so a replay stays a no-op
            IF v_sub = 0 AND v_pur = 0 THEN
                INSERT INTO public.credit_transactions
                    (user_id, amount, transaction_type, credit_pool, reference_id, description)
                VALUES (p_target_user_id, 0, 'clawback',
                        CASE WHEN p_pool = 'purchased' THEN 'purchased' ELSE 'subscription' END,
                        p_ref_id, p_reason);
            END IF;

            RETURN QUERY SELECT TRUE, v_sub + v_pur, v_sub, v_pur,
                v_sub_balance, v_pur_balance, NULL::TEXT;
        END;
        $$ LANGUAGE plpgsql;
    """)

    op.execute("""
        CREATE OR REPLACE FUNCTION public.clawback_from_transaction_v2(
            p_target_user_id UUID,
            p_original_ref_id TEXT,
            p_reason TEXT
        )
        RETURNS TABLE(
            success BOOLEAN,
            credits_clawed_back INTEGER,
            subscription_clawed INTEGER,
            purchased_clawed INTEGER,
            new_subscription_balance INTEGER,
            new_purchased_balance INTEGER,
            error_message TEXT
        ) AS $$
        DECLARE
            v_sub_balance INTEGER;
            v_pur_balance INTEGER;
            v_sub_granted INTEGER;
            v_pur_granted INTEGER;
            v_sub_reversed INTEGER;
            v_pur_reversed INTEGER;
            v_sub INTEGER;
            v_pur INTEGER;
        BEGIN
            SELECT p.subscription_credits_balance, p.purchased_credits_balance
            INTO v_sub_balance, v_pur_balance
            FROM public.profiles p
            WHERE p.id = p_target_user_id
            FOR UPDATE;

            IF NOT FOUND THEN
                RETURN QUERY SELECT FALSE, 0, 0, 0, 0, 0, 'Profile not found'::TEXT;
                RETURN;
            END IF;

            SELECT
                COALESCE(SUM(ct.amount) FILTER (
                    WHERE ct.credit_pool = 'subscription' AND ct.transaction_type <> 'clawback'
                ), 0),
                COALESCE(SUM(ct.amount) FILTER (
                    WHERE ct.credit_pool = 'purchased' AND ct.transaction_type <> 'clawback'
                ), 0),
                COALESCE(SUM(-ct.amount) FILTER (
                    WHERE ct.credit_pool = 'subscription' AND ct.transaction_type = 'clawback'
                ), 0),
                COALESCE(SUM(-ct.amount) FILTER (
                    WHERE ct.credit_pool = 'purchased' AND ct.transaction_type = 'clawback'
                ), 0)
            INTO v_sub_granted, v_pur_granted, v_sub_reversed, v_pur_reversed
            FROM public.credit_transactions ct
            WHERE ct.user_id = p_target_user_id
              AND ct.reference_id = p_original_ref_id
              AND (ct.amount > 0 OR ct.transaction_type = 'clawback');

            IF v_sub_granted + v_pur_granted = 0 THEN
                RETURN QUERY SELECT FALSE, 0, 0, 0, v_sub_balance, v_pur_balance,
                    format('No credits found to clawback for reference %s', p_original_ref_id);
                RETURN;
            END IF;

            -- Never reverse more than is still outstanding under the reference
            v_sub := LEAST(GREATEST(v_sub_granted - v_sub_reversed, 0), v_sub_balance);
            v_pur := LEAST(GREATEST(v_pur_granted - v_pur_reversed, 0), v_pur_balance);

            IF v_sub = 0 AND v_pur = 0 THEN
                RETURN QUERY SELECT TRUE, 0, 0, 0, v_sub_balance, v_pur_balance, NULL::TEXT;
                RETURN;
            END IF;

            UPDATE public.profiles p
            SET subscription_credits_balance = p.subscription_credits_balance - v_sub,
                purchased_credits_balance = p.purchased_credits_balance - v_pur,
                updated_at = NOW()
            WHERE p.id = p_target_user_id
            RETURNING p.subscription_credits_balance, p.purchased_credits_balance
            INTO v_sub_balance, v_pur_balance;

            IF v_sub > 0 THEN
                INSERT INTO public.credit_transactions
                    (user_id, amount, transaction_type, credit_pool, reference_id, description)
                VALUES (p_target_user_id, -v_sub, 'clawback', 'subscription',
                        p_original_ref_id, p_reason);
            END IF;
            IF v_pur > 0 THEN
                INSERT INTO public.credit_transactions
                    (user_id, amount, transaction_type, credit_pool, reference_id, description)
                VALUES (p_target_user_id, -v_pur, 'clawback', 'purchased',
                        p_original_ref_id, p_reason);
            END IF;

            RETURN QUERY SELECT TRUE, v_sub + v_pur, v_sub, v_pur,
                v_sub_balance, v_pur_balance, NULL::TEXT;
        END;
        $$ LANGUAGE plpgsql;
    """)


def downgrade() -> None:
    op.execute("DROP FUNCTION IF EXISTS public.clawback_from_transaction_v2(UUID, TEXT, TEXT)")
    op.execute(
        "DROP FUNCTION IF EXISTS public.clawback_credits_v2(UUID, INTEGER, TEXT, TEXT, TEXT)"
    )
    op.execute(
        "DROP FUNCTION IF EXISTS public.add_purchased_credits(UUID, INTEGER, TEXT, TEXT, TEXT)"
    )
    op.execute(
        "DROP FUNCTION IF EXISTS public.add_subscription_credits(UUID, INTEGER, TEXT, TEXT, INTEGER)"
    )
