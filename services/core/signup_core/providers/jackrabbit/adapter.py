"""Jackrabbit Class adapter.

Drives registrations for organizations hosted on Jackrabbit Class
(``app.jackrabbitclass.com``). The organization is identified by the
``id`` (or ``OrgID``) query parameter of its registration URL.

- Discovery reads the public openings JSON feed.
- Reservation logs into the parent portal with stored credentials and
  enrolls the child from the vaulted child profile.
- Finalization re-reads the enrollment before paying, so calling it twice
  never charges twice.

Usage:
    adapter = JackrabbitAdapter(secrets=vault, fee_charger=billing)
    check = await adapter.precheck(ctx)
    sessions = await adapter.find_sessions(ctx, ProviderIntent(date="2024-06-10"))
"""

import asyncio
import logging
from typing import Any, Optional
from urllib.parse import parse_qs, urlparse

import httpx

from signup_core.infrastructure.host_throttle import BackoffStrategy
from signup_core.providers.base import (
    Finalized,
    FinalizeFailed,
    FinalizeResult,
    FinalizeWaitlisted,
    NeedsCaptcha,
    Platform,
    PrecheckResult,
    ProviderAdapter,
    ProviderContext,
    ProviderIntent,
    ProviderSessionCandidate,
    Reserved,
    ReserveFailed,
    ReserveResult,
    ReserveWaitlisted,
    SecretResolver,
    ServiceFeeCharger,
    apply_intent,
    parse_provider_time,
)

logger = logging.getLogger(__name__)

REQUIRED_CHILD_FIELDS = ("first_name", "last_name", "dob", "emergency_contacts")


def _parse_capacity(value: Any) -> Optional[int]:
    """Open seat count from the feed; None when absent or unreadable."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return None


class JackrabbitAPIError(Exception):
    """Raised when a Jackrabbit endpoint answers with an error."""

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


class JackrabbitAdapter(ProviderAdapter):
    """Adapter for the Jackrabbit Class registration platform."""

    BASE_URL = "https://app.jackrabbitclass.com"
    OPENINGS_URL = f"{BASE_URL}/jr3.0/Openings/OpeningsJson"
    PORTAL_URL = f"{BASE_URL}/jr3.0/ParentPortal"

    def __init__(
        self,
        secrets: SecretResolver,
        fee_charger: Optional[ServiceFeeCharger] = None,
        backoff: Optional[BackoffStrategy] = None,
    ):
        """Initialize the adapter.

        Args:
            secrets: Vault used to resolve login and child-profile references.
            fee_charger: Charges the service fee when Jackrabbit collects the
                tuition itself. Without one, no fee is charged.
            backoff: Retry policy for idempotent reads.
        """
        self.secrets = secrets
        self.fee_charger = fee_charger
        self.backoff = backoff or BackoffStrategy()

    @property
    def platform(self) -> str:
        return Platform.JACKRABBIT_CLASS.value

    # =========================================================================
    # HELPERS
    # =========================================================================

    @staticmethod
    def org_id(url: str) -> Optional[str]:
        """Organization id from a registration URL, or None."""
        query = parse_qs(urlparse(url).query)
        for key, values in query.items():
            if key.lower() in ("id", "orgid") and values and values[0].strip():
                return values[0].strip()
        return None

    def _timeout(self, ctx: ProviderContext) -> httpx.Timeout:
        return httpx.Timeout(float(ctx.config.timeout_seconds))

    @staticmethod
    def _payload(response: httpx.Response, action: str) -> dict[str, Any]:
        if response.status_code >= 400:
            raise JackrabbitAPIError(
                f"{action} failed with HTTP {response.status_code}",
                status_code=response.status_code,
            )
        data = response.json()
        if not isinstance(data, dict):
            raise JackrabbitAPIError(f"{action} returned an unexpected payload")
        return data

    async def _get_with_retry(
        self,
        client: httpx.AsyncClient,
        ctx: ProviderContext,
        url: str,
        params: Optional[dict] = None,
        headers: Optional[dict] = None,
    ) -> httpx.Response:
        """GET with retries on 429/5xx, bounded by the hostname's retry budget."""
        attempts = max(1, ctx.config.retry_attempts)
        for attempt in range(1, attempts + 1):
            response = await client.get(url, params=params, headers=headers)
            if attempt < attempts and self.backoff.should_retry(response.status_code, attempt):
                retry_after = response.headers.get("Retry-After")
                await asyncio.sleep(
                    self.backoff.get_delay_for_status(
                        response.status_code,
                        attempt,
                        int(retry_after) if retry_after and retry_after.isdigit() else None,
                    )
                )
                continue
            return response
        return response

    async def _login(
        self, client: httpx.AsyncClient, ctx: ProviderContext, org_id: str
    ) -> str:
        credentials = self.secrets.resolve_json(ctx.vault_ref("login"))
        response = await client.post(
            f"{self.PORTAL_URL}/Login",
            json={
                "OrgID": org_id,
                "Email": credentials.get("email"),
                "Password": credentials.get("password"),
            },
        )
        data = self._payload(response, "Parent portal login")
        token = data.get("token")
        if not token:
            raise JackrabbitAPIError("Parent portal login returned no session token", 401)
        return token

    def _map_opening(
        self, row: dict, org_id: str, tz: str
    ) -> Optional[ProviderSessionCandidate]:
        """Map one feed row, or None when the row cannot be read."""
        openings = row.get("openings")
        if not isinstance(openings, dict):
            openings = {}
        name = row.get("name")
        link = row.get("online_reg_link")
        class_id = str(row.get("id"))
        try:
            return ProviderSessionCandidate(
                id=class_id,
                url=link if isinstance(link, str) and link
                else f"{self.BASE_URL}/regv2.asp?id={org_id}&preLoadClassID={class_id}",
                title=name.strip() if isinstance(name, str) else "",
                start_at=parse_provider_time(row.get("start_date"), row.get("start_time"), tz),
                end_at=parse_provider_time(row.get("end_date"), row.get("end_time"), tz),
                capacity=_parse_capacity(openings.get("calculated_openings")),
            )
        except (TypeError, ValueError) as e:
            logger.warning("Skipping unreadable Jackrabbit class row %s: %s", class_id, e)
            return None

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def precheck(self, ctx: ProviderContext) -> PrecheckResult:
        """Check org id, stored login and the required child fields."""
        if not self.org_id(ctx.canonical_url):
            return PrecheckResult.failed(
                "Registration URL is missing the Jackrabbit organization id (?id=...)",
                fixable_by_parent=False,
            )

        login_ref = ctx.vault_ref("login")
        if not login_ref or not self.secrets.exists(login_ref):
            return PrecheckResult.failed("No saved Jackrabbit parent portal login")

        if not ctx.child_token or not self.secrets.exists(ctx.child_token):
            return PrecheckResult.failed("No child profile selected for this registration")

        child = self.secrets.resolve_json(ctx.child_token)
        missing = [name for name in REQUIRED_CHILD_FIELDS if not child.get(name)]
        if missing:
            return PrecheckResult.failed(
                f"Child profile is missing required fields: {', '.join(missing)}"
            )

        return PrecheckResult.passed()

    async def find_sessions(
        self,
        ctx: ProviderContext,
        intent: Optional[ProviderIntent] = None,
    ) -> list[ProviderSessionCandidate]:
        """List classes from the openings feed, filtered and ranked by intent."""
        org_id = self.org_id(ctx.canonical_url)
        if not org_id:
            return []

        try:
            async with httpx.AsyncClient(timeout=self._timeout(ctx)) as client:
                response = await self._get_with_retry(
                    client, ctx, self.OPENINGS_URL, params={"OrgID": org_id}
                )
            data = self._payload(response, "Openings feed")
        except (httpx.HTTPError, JackrabbitAPIError, ValueError) as e:
            logger.warning("Jackrabbit openings feed unavailable for org %s: %s", org_id, e)
            return []

        candidates = []
        for row in data.get("rows") or []:
            if not isinstance(row, dict) or row.get("id") is None:
                continue
            candidate = self._map_opening(row, org_id, ctx.timezone)
            if candidate is not None:
                candidates.append(candidate)

        return apply_intent(candidates, intent, ctx.timezone)

    async def reserve(
        self,
        ctx: ProviderContext,
        candidate: ProviderSessionCandidate,
    ) -> ReserveResult:
        """Log in and enroll the child in ``candidate``'s class."""
        org_id = self.org_id(ctx.canonical_url)
        if not org_id:
            return ReserveFailed("Registration URL is missing the organization id")

        try:
            child = self.secrets.resolve_json(ctx.child_token)
            captcha_answer = ctx.metadata.get("captcha_token")

            async with httpx.AsyncClient(timeout=self._timeout(ctx)) as client:
                token = await self._login(client, ctx, org_id)
                body = {
                    "OrgID": org_id,
                    "ClassID": candidate.id,
                    "Student": {
                        "FirstName": child["first_name"],
                        "LastName": child["last_name"],
                        "BirthDate": child["dob"],
                    },
                    "EmergencyContacts": child["emergency_contacts"],
                    "Quantity": ctx.metadata.get("quantity", 1),
                }
                if captcha_answer:
                    body["ChallengeResponse"] = captcha_answer
                response = await client.post(
                    f"{self.PORTAL_URL}/Enroll",
                    json=body,
                    headers={"Authorization": f"Bearer {token}"},
                )
            data = self._payload(response, "Enrollment")

        except httpx.TimeoutException:
            return ReserveFailed("Jackrabbit did not respond in time")
        except JackrabbitAPIError as e:
            if e.status_code in (401, 403):
                return ReserveFailed(
                    "Jackrabbit rejected the saved parent portal login",
                    fixable_by_parent=True,
                )
            return ReserveFailed(str(e))
        except httpx.HTTPError as e:
            return ReserveFailed(f"Could not reach Jackrabbit: {e}")
        except Exception as e:
            logger.exception("Unexpected error enrolling class %s", candidate.id)
            return ReserveFailed(f"Unexpected enrollment error: {e}")

        status = data.get("status")
        enrollment_id = data.get("enrollment_id")

        if status == "enrolled" and enrollment_id:
            return Reserved(candidate.with_provider_id(str(enrollment_id)))
        if status in ("waitlist", "waitlisted"):
            waitlisted = candidate.with_provider_id(str(enrollment_id)) if enrollment_id else candidate
            return ReserveWaitlisted(waitlisted, position=data.get("waitlist_position"))
        if status == "challenge":
            challenge = data.get("challenge")
            if not isinstance(challenge, dict):
                challenge = {}
            return NeedsCaptcha(
                provider=challenge.get("type") or "unknown",
                challenge={k: v for k, v in challenge.items() if k != "type"},
            )

        message = data.get("message") or "Jackrabbit refused the enrollment"
        return ReserveFailed(message, fixable_by_parent=bool(data.get("field_errors")))

    async def finalize_payment(
        self,
        ctx: ProviderContext,
        candidate: ProviderSessionCandidate,
    ) -> FinalizeResult:
        """Settle a reserved enrollment.

        The enrollment is read first. An existing payment confirmation is
        returned as-is; a provider-collected balance only triggers the
        service fee; otherwise tuition is paid through the portal with an
        idempotency key derived from the enrollment id.
        """
        if not candidate.provider_id:
            return FinalizeFailed("Candidate has not been reserved")

        org_id = self.org_id(ctx.canonical_url)
        enrollment_url = f"{self.PORTAL_URL}/Enrollment/{candidate.provider_id}"

        try:
            async with httpx.AsyncClient(timeout=self._timeout(ctx)) as client:
                token = await self._login(client, ctx, org_id)
                headers = {"Authorization": f"Bearer {token}"}
                enrollment = self._payload(
                    await self._get_with_retry(client, ctx, enrollment_url, headers=headers),
                    "Enrollment lookup",
                )

                if enrollment.get("payment_confirmation"):
                    return Finalized(
                        confirmation_id=str(enrollment["payment_confirmation"]),
                        provider_collects_payment=bool(enrollment.get("payment_collected_by_provider")),
                    )

                if enrollment.get("status") in ("waitlist", "waitlisted"):
                    return FinalizeWaitlisted("Enrollment is still on the waitlist")

                if enrollment.get("payment_collected_by_provider"):
                    if self.fee_charger is not None:
                        await self.fee_charger.charge_service_fee(
                            ctx.user_id, f"service-fee:{candidate.provider_id}"
                        )
                    return Finalized(
                        confirmation_id=candidate.provider_id,
                        provider_collects_payment=True,
                    )

                payment_ref = ctx.vault_ref("payment_method")
                if not payment_ref:
                    return FinalizeFailed(
                        "No saved payment method for this registration",
                        fixable_by_parent=True,
                    )
                payment = self.secrets.resolve_json(payment_ref)
                paid = self._payload(
                    await client.post(
                        f"{enrollment_url}/Pay",
                        json={"PaymentToken": payment.get("token")},
                        headers={
                            **headers,
                            "Idempotency-Key": f"enrollment-pay:{candidate.provider_id}",
                        },
                    ),
                    "Payment",
                )

            confirmation = paid.get("payment_confirmation") or paid.get("confirmation_id")
            if not confirmation:
                return FinalizeFailed("Jackrabbit accepted the payment without a confirmation id")
            amount = paid.get("amount")
            try:
                amount_cents = int(round(float(amount) * 100)) if amount is not None else 0
            except (TypeError, ValueError, OverflowError):
                return FinalizeFailed(
                    f"Jackrabbit payment {confirmation} returned an unreadable amount: {amount!r}"
                )
            return Finalized(confirmation_id=str(confirmation), amount_charged_cents=amount_cents)

        except httpx.TimeoutException:
            return FinalizeFailed("Jackrabbit did not respond in time")
        except JackrabbitAPIError as e:
            return FinalizeFailed(str(e), fixable_by_parent=e.status_code in (401, 402, 403))
        except httpx.HTTPError as e:
            return FinalizeFailed(f"Could not reach Jackrabbit: {e}")
        except Exception as e:
            logger.exception("Unexpected error paying enrollment %s", candidate.provider_id)
            return FinalizeFailed(f"Unexpected payment error: {e}")
