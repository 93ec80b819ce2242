"""ErrandHub: dispatch and negotiation core for deliveries and errands."""
