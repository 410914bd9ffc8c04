"""
Built-in message templates.

Used whenever the store has no row for a slug, and as the stage template set
when the store holds no templates at all. Rows in message_templates with the
same slug override these.

Placeholders: {{name}}, {{first_name}}, {{owner_name}}, {{date}}, {{time}},
{{project_type}}, {{amount}}, {{booking_link}}, {{payment_link}}, {{meet_link}}
"""
from __future__ import annotations

from models.schemas import Channel, DelayRule, Stage, Template

_ALL = [Channel.EMAIL, Channel.SMS, Channel.WHATSAPP]
_EMAIL_WA = [Channel.EMAIL, Channel.WHATSAPP]
_PHONE = [Channel.SMS, Channel.WHATSAPP]


DEFAULT_TEMPLATES: list[Template] = [
    Template(
        slug="call1_confirmed",
        name="Call 1 Booking Confirmation",
        channels=_ALL,
        trigger_stage=Stage.CALL1_SCHEDULED,
        sort_order=0,
        subject="Your consultation is confirmed, {{first_name}}",
        body="""Hi {{first_name}},

Your free consultation with {{owner_name}} is confirmed for {{date}} at {{time}}.

Join your video call here:
{{meet_link}}

What to have ready (optional):
• A few photos of the space
• Any inspiration images you like
• Rough dimensions if you have them

Need to reschedule? Just reply to this message.

See you soon!
PaxBespoke""",
    ),
    Template(
        slug="call1_reminder",
        name="Call 1 Reminder (24h)",
        channels=_ALL,
        trigger_stage=Stage.CALL1_SCHEDULED,
        delay_rule=DelayRule.MINUTES_BEFORE_BOOKING,
        delay_minutes=24 * 60,
        sort_order=1,
        subject="Reminder: Your consultation is coming up",
        body="""Hi {{first_name}},

Just a reminder about your consultation with {{owner_name}} tomorrow, {{date}} at {{time}}.

Join your video call here:
{{meet_link}}

Please have a few photos of your space ready if possible. It helps us give you the best advice.

See you soon!
PaxBespoke""",
    ),
    Template(
        slug="call1_reminder_2h",
        name="Call 1 Reminder (2h)",
        channels=_PHONE,
        trigger_stage=Stage.CALL1_SCHEDULED,
        delay_rule=DelayRule.MINUTES_BEFORE_BOOKING,
        delay_minutes=120,
        sort_order=2,
        subject="Your consultation is in 2 hours",
        body="""Hi {{first_name}},

Quick reminder: your consultation with {{owner_name}} is in 2 hours at {{time}}.

Join here: {{meet_link}}

Speak soon!
PaxBespoke""",
    ),
    Template(
        slug="call2_invite",
        name="Call 2 Invite",
        channels=_EMAIL_WA,
        trigger_stage=Stage.QUALIFIED,
        sort_order=0,
        subject="Your design follow-up is ready, {{first_name}}",
        body="""Hi {{first_name}},

Great news! We've put together some options for your {{project_type}} project and we'd love to walk you through them.

Book your follow-up call here: {{booking_link}}

Looking forward to it,
{{owner_name}}""",
    ),
    Template(
        slug="call2_confirmed",
        name="Call 2 Booking Confirmation",
        channels=_ALL,
        trigger_stage=Stage.CALL2_SCHEDULED,
        sort_order=0,
        subject="Your design call is confirmed, {{first_name}}",
        body="""Hi {{first_name}},

Your design call with {{owner_name}} is confirmed for {{date}} at {{time}}.

Join your video call here:
{{meet_link}}

We've prepared some options for your {{project_type}} project and can't wait to show you.

See you then!
{{owner_name}}""",
    ),
    Template(
        slug="call2_reminder",
        name="Call 2 Reminder (24h)",
        channels=_ALL,
        trigger_stage=Stage.CALL2_SCHEDULED,
        delay_rule=DelayRule.MINUTES_BEFORE_BOOKING,
        delay_minutes=24 * 60,
        sort_order=1,
        subject="Reminder: Your design call is tomorrow",
        body="""Hi {{first_name}},

Just a reminder about your design call with {{owner_name}} tomorrow, {{date}} at {{time}}.

Join your video call here:
{{meet_link}}

We'll walk through the options we've prepared for your {{project_type}} project.

See you then!
PaxBespoke""",
    ),
    Template(
        slug="deposit_request",
        name="Deposit Request",
        channels=_EMAIL_WA,
        trigger_stage=Stage.AWAITING_DEPOSIT,
        sort_order=0,
        subject="Secure your project: deposit details",
        body="""Hi {{first_name}},

Thanks for confirming your project. To secure your slot, please pay the deposit of £{{amount}} using the link below:

{{payment_link}}

Once received, we'll schedule your onboarding visit.

Best,
{{owner_name}}""",
    ),
    Template(
        slug="onboarding_invite",
        name="Onboarding Invite",
        channels=_EMAIL_WA,
        trigger_stage=Stage.DEPOSIT_PAID,
        sort_order=0,
        subject="Time to measure up: book your onboarding visit",
        body="""Hi {{first_name}},

Your deposit is confirmed, thank you! The next step is your onboarding visit where we'll take detailed measurements and finalise everything.

Book your onboarding: {{booking_link}}

{{owner_name}}""",
    ),
    Template(
        slug="onboarding_confirmed",
        name="Onboarding Booking Confirmation",
        channels=_ALL,
        trigger_stage=Stage.ONBOARDING_SCHEDULED,
        sort_order=0,
        subject="Your onboarding visit is confirmed, {{first_name}}",
        body="""Hi {{first_name}},

Your onboarding visit with {{owner_name}} is confirmed for {{date}} at {{time}}.

During the visit we'll:
• Take detailed measurements
• Finalise your design choices
• Confirm materials and finishes

Please make sure the wardrobe area is accessible.

See you then!
{{owner_name}}""",
    ),
    Template(
        slug="review_request",
        name="Review Request",
        channels=_EMAIL_WA,
        trigger_stage=Stage.COMPLETE,
        delay_rule=DelayRule.MINUTES_AFTER_STAGE,
        delay_minutes=3 * 24 * 60,
        sort_order=0,
        subject="How did we do, {{first_name}}?",
        body="""Hi {{first_name}},

Your {{project_type}} project is complete! We hope you love the result.

We'd really appreciate a quick review. It helps other homeowners find us:
https://g.page/paxbespoke/review

Thanks for choosing PaxBespoke!""",
    ),
]

DEFAULTS_BY_SLUG: dict[str, Template] = {t.slug: t for t in DEFAULT_TEMPLATES}
