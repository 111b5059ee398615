SEVERITIES = ("LOW", "MEDIUM", "HIGH", "CRITICAL")


def calculate_vulnerability_stats(trivy_report, image=None):
    """
    Calculate the number of vulnerabilities by severity (LOW, MEDIUM, HIGH, CRITICAL)
    from a Trivy JSON report.
    """
    severity_counts = {severity: 0 for severity in SEVERITIES}

    results = trivy_report.get("Results") if isinstance(trivy_report, dict) else None
    for result in results or []:
        for vuln in result.get("Vulnerabilities") or []:
            severity = (vuln.get("Severity") or "").upper()
            if severity in severity_counts:
                severity_counts[severity] += 1

    stats = {
        "severity_counts": severity_counts,
        "total_vulnerabilities": sum(severity_counts.values()),
    }
    if image:
        stats["image"] = image
    return stats
